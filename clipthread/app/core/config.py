from datetime import timedelta
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Clipthread"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Storage
    STORE_BACKEND: str = "memory"  # memory, arango
    ARANGO_HOST: str = "http://localhost:8529"
    ARANGO_USERNAME: str = "root"
    ARANGO_PASSWORD: str = "test"
    ARANGO_DB_NAME: str = "clipthread"

    # Classifier
    OPEN_ROUTER_API_KEY: str = ""
    LLM_BASE_URL: str = "https://openrouter.ai/api/v1"
    LLM_MODEL: str = "nvidia/nemotron-nano-9b-v2:free"
    CLASSIFIER_TIMEOUT_SECONDS: float = 30.0
    CLASSIFIER_RATE_CAPACITY: int = 5
    CLASSIFIER_RATE_PER_SECOND: float = 0.5

    # Research lookup
    SERPAPI_API_KEY: str = ""
    RESEARCH_TIMEOUT_SECONDS: float = 60.0
    MAX_QUERIES_PER_PASS: int = 3
    INTER_QUERY_DELAY_SECONDS: float = 1.0

    # Sessions
    SESSION_WINDOW_SECONDS: int = 3600
    THEME_MATCHING_WINDOW_SECONDS: int = 7200
    CLEANUP_INTERVAL_SECONDS: int = 60
    AUTO_APPLY_RETYPE: bool = True
    BROWSER_APPS: List[str] = ["Google Chrome", "Safari", "Firefox", "Microsoft Edge", "Arc"]

    # Pipelines
    PIPELINE_MAX_STEPS: int = 25
    PIPELINE_RUN_RETENTION_SECONDS: int = 300

    class Config:
        env_file = ".env"

    @property
    def session_window(self) -> timedelta:
        return timedelta(seconds=self.SESSION_WINDOW_SECONDS)

    @property
    def theme_window(self) -> timedelta:
        return timedelta(seconds=self.THEME_MATCHING_WINDOW_SECONDS)


settings = Settings()
