"""Application configuration."""

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings read from the environment (and ``.env``)."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = "Workflow Automation Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Dispatcher
    POLL_INTERVAL: float = 1.0  # seconds
    MAX_PARALLEL_RUNS: int = 1
    SHUTDOWN_GRACE_PERIOD: float = 5.0  # seconds

    # Defaults for workflows that leave these unset
    DEFAULT_STEP_TIMEOUT: int = 300  # seconds
    DEFAULT_EXECUTION_TIMEOUT: int = 300  # seconds
    MAX_STEP_VISITS: int = 100
    MAX_EXECUTION_HISTORY: int = 1000

    # Outbound HTTP
    HTTP_TIMEOUT: float = 30.0
    # JSON list, e.g. [{"name": "crm", "base_url": "https://crm/api", "headers": {...}}]
    INTEGRATIONS: list[dict[str, Any]] = []

    # Notifications
    NOTIFICATION_WEBHOOK_URL: str = ""

    # Event bus
    EVENT_BUS_BACKEND: str = "memory"  # memory or redis
    REDIS_URL: str = "redis://localhost:6379/0"
    EVENT_CHANNEL_PREFIX: str = "workflow:events:"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()
