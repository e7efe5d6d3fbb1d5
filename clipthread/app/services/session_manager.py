import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.exceptions import SessionNotFound
from clipthread.app.db.store import SessionStore
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.session import Session
from clipthread.app.services.candidates import CandidateFinder
from clipthread.app.services.classifier import ClassifierService
from clipthread.app.services.consolidation import ConsolidationEngine, ConsolidationOutcome
from clipthread.app.services.lifecycle import LifecycleManager
from clipthread.app.services.membership import MembershipEvaluator
from clipthread.app.services.notifications import NotificationHub
from clipthread.app.services.pipeline import PipelineExecutor
from clipthread.app.services.search import SearchProvider
from clipthread.app.services.taxonomy import SessionTaxonomy
from clipthread.app.services.themes import ThemeDetector
from clipthread.app.workflows.classification import build_membership_pipeline, build_session_type_pipeline
from clipthread.app.workflows.consolidation import build_consolidation_pipeline
from clipthread.app.workflows.research import build_query_generation_pipeline, build_research_pipeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    session: Optional[Session] = None
    created: bool = False
    joined: bool = False
    activated: bool = False
    retyped: bool = False
    rule: str = "no_match"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "session_id": self.session.id if self.session else None,
            "session_type": self.session.session_type if self.session else None,
            "label": self.session.label if self.session else None,
            "status": self.session.status.value if self.session else None,
            "item_count": self.session.item_count if self.session else 0,
            "created": self.created,
            "joined": self.joined,
            "activated": self.activated,
            "retyped": self.retyped,
            "rule": self.rule,
        }


class SessionManager:
    """
    Entry point for capture events and administrative queries.

    Events are processed one at a time: candidate lookup, membership decision,
    creation or add-member, promotion. Consolidation is handed off to a
    background task and never blocks ingestion.
    """

    def __init__(
        self,
        store: SessionStore,
        classifier: ClassifierService,
        search: SearchProvider,
        config: Optional[Settings] = None,
        taxonomy: Optional[SessionTaxonomy] = None,
        themes: Optional[ThemeDetector] = None,
        notifier: Optional[NotificationHub] = None,
        executor: Optional[PipelineExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = config or default_settings
        self.store = store
        self.search = search
        self.taxonomy = taxonomy or SessionTaxonomy()
        self.themes = themes or ThemeDetector()
        self.notifier = notifier or NotificationHub()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.executor = executor or PipelineExecutor(
            max_steps=self.settings.PIPELINE_MAX_STEPS,
            retention=timedelta(seconds=self.settings.PIPELINE_RUN_RETENTION_SECONDS),
            clock=self._clock,
        )
        for pipeline in (
            build_session_type_pipeline(classifier),
            build_membership_pipeline(classifier),
            build_query_generation_pipeline(),
            build_research_pipeline(search),
            build_consolidation_pipeline(classifier, self.taxonomy),
        ):
            self.executor.register(pipeline)

        self.finder = CandidateFinder(store, clock=self._clock)
        self.evaluator = MembershipEvaluator(
            store, self.executor, self.taxonomy, self.themes, config=self.settings, clock=self._clock
        )
        self.lifecycle = LifecycleManager(
            store, self.executor, self.taxonomy, self.themes, self.notifier, config=self.settings, clock=self._clock
        )
        self.consolidation = ConsolidationEngine(
            store, self.executor, self.lifecycle, self.taxonomy, self.notifier, config=self.settings, sleep=sleep
        )
        self._ingest_lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    # Ingestion

    async def on_event(self, event: CaptureEvent) -> IngestResult:
        async with self._ingest_lock:
            return await self._ingest(event)

    async def _ingest(self, event: CaptureEvent) -> IngestResult:
        self.store.save_event(event)
        candidates = self.finder.find_candidates(event, self.settings.session_window)
        decision = await self.evaluator.evaluate(event, candidates)

        if not decision.matched:
            session = await self.lifecycle.create_session(event)
            if session is None:
                return IngestResult(event_id=event.id)
            self.notifier.session_created(session, event, not candidates)
            return IngestResult(event_id=event.id, session=session, created=True, rule="created")

        retyped = False
        if decision.retype is not None:
            retyped = self.lifecycle.handle_retype(decision.retype)

        addition = self.lifecycle.add_member(decision.session.id, event)
        session = addition.session
        self.notifier.session_updated(session.id, session.session_type, session.item_count, addition.activated)

        if addition.activated:
            self.lifecycle.analyze_intent(session.id)
        if addition.created and session.item_count >= 2:
            self.consolidation.schedule(session.id)

        return IngestResult(
            event_id=event.id,
            session=self.store.get_session(session.id),
            joined=True,
            activated=addition.activated,
            retyped=retyped,
            rule=decision.rule,
        )

    # Administrative operations

    def get_active_sessions(self) -> List[Session]:
        """All retained sessions, most recently active first."""
        return self.store.list_sessions()

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_session_items(self, session_id: str) -> List[CaptureEvent]:
        self.get_session(session_id)
        return self.store.get_session_items(session_id)

    def get_sessions_by_type(self, session_type: str) -> List[Session]:
        return self.store.list_sessions(session_type=session_type)

    def search_sessions(self, query: str) -> List[Session]:
        return self.store.search_sessions(query)

    async def clear_all_sessions(self) -> int:
        async with self._ingest_lock:
            await self.consolidation.cancel_all()
            self.evaluator.cache.clear()
            count = self.store.clear_all_sessions()
        logger.info("Cleared %d sessions", count)
        self.notifier.sessions_cleared(count)
        return count

    async def perform_session_research(self, session_id: str) -> ConsolidationOutcome:
        self.get_session(session_id)
        return await self.consolidation.run_now(session_id)

    def apply_retype_proposal(self, session_id: str) -> Session:
        return self.lifecycle.apply_pending_retype(session_id)

    def cleanup_expired_sessions(self) -> int:
        """Sessions are retained indefinitely; only finished pipeline runs are pruned."""
        pruned = self.executor.prune()
        if pruned:
            logger.debug("Pruned %d pipeline runs", pruned)
        return 0

    # Background work

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.settings.CLEANUP_INTERVAL_SECONDS)
            self.cleanup_expired_sessions()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="session-cleanup")

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.consolidation.cancel_all()
        await self.search.close()
