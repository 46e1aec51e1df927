from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+psycopg://user:password@db/dbname"

    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/0"
    PIPELINE_QUEUE: str = "pipeline"

    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    GOOGLE_VISION_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""

    CONTEXT_PROVIDER: str = "openai"
    CONTEXT_MODEL: str = "gpt-4o-mini"
    AI_PROVIDER: str = "openai"
    AI_MODEL: str = "gpt-4o"
    VISION_PROVIDERS: List[str] = ["openai", "google"]
    OPENAI_VISION_MODEL: str = "gpt-4o"
    GOOGLE_VISION_MODEL: str = "images:annotate"
    ANTHROPIC_VISION_MODEL: str = "claude-3-5-sonnet-latest"

    PROVIDER_TIMEOUT_SECONDS: float = 60.0
    PROVIDER_MAX_ATTEMPTS: int = 3
    PROVIDER_BACKOFF_BASE_SECONDS: float = 0.5
    PROVIDER_BACKOFF_MAX_SECONDS: float = 8.0
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_COOLDOWN_SECONDS: float = 300.0

    # Escalate "every vision provider failed" to a stage failure.
    REQUIRE_VISION_RESULTS: bool = False

    DEDUP_WINDOW_HOURS: int = 24
    EVENT_RETENTION_DAYS: int = 60
    STALE_STAGE_SECONDS: int = 600

    LOG_LEVEL: str = "INFO"

    @field_validator("OPENAI_API_KEY", "GOOGLE_VISION_API_KEY", "ANTHROPIC_API_KEY", mode="before")
    @classmethod
    def strip_api_keys(cls, v):
        """Secrets mounted from files often carry a trailing newline."""
        if isinstance(v, str):
            return v.strip()
        return v

    class Config:
        env_file = ".env"

settings = Settings()
