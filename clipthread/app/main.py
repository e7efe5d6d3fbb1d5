import logging
from typing import Optional

from fastapi import FastAPI

from clipthread.app.api.api import api_router
from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.logging_config import setup_logging
from clipthread.app.db.memory import InMemorySessionStore
from clipthread.app.services.classifier import LLMClassifier
from clipthread.app.services.search import SerpApiSearch
from clipthread.app.services.session_manager import SessionManager
from clipthread.app.services.taxonomy import SessionTaxonomy
from clipthread.app.services.ws_manager import NotificationBroadcaster

logger = logging.getLogger(__name__)


def build_session_manager(config: Settings) -> SessionManager:
    if config.STORE_BACKEND == "arango":
        from clipthread.app.db.arango import ArangoSessionStore
        store = ArangoSessionStore.connect(config)
    else:
        store = InMemorySessionStore()

    taxonomy = SessionTaxonomy()
    classifier = LLMClassifier(config, session_types=taxonomy.types())
    if not classifier.configured:
        logger.warning("OPEN_ROUTER_API_KEY not set; sessions will be grouped by keyword rules only")
    return SessionManager(store, classifier, SerpApiSearch(config), config=config, taxonomy=taxonomy)


def create_app(manager: Optional[SessionManager] = None, config: Optional[Settings] = None) -> FastAPI:
    config = config or default_settings
    app = FastAPI(title=config.PROJECT_NAME)
    app.state.session_manager = manager
    app.state.broadcaster = NotificationBroadcaster()
    if manager is not None:
        manager.notifier.subscribe(app.state.broadcaster)

    @app.on_event("startup")
    async def startup_event():
        setup_logging(config.LOG_LEVEL)
        if app.state.session_manager is None:
            app.state.session_manager = build_session_manager(config)
            app.state.session_manager.notifier.subscribe(app.state.broadcaster)
        app.state.session_manager.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.session_manager.shutdown()

    app.include_router(api_router, prefix=config.API_V1_STR)

    @app.get("/")
    async def root():
        return {"message": f"{config.PROJECT_NAME} API is running"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
