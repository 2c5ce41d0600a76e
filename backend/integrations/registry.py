"""
Named integration registry.

An integration gives a name to an external API: its base URL and the
headers every call carries. ``invoke_integration`` steps look integrations
up by name and count their requests and errors here.
"""

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger(__name__)

SECRET_HEADER_MARKERS = ("key", "token", "secret", "authorization")


class IntegrationConfig(BaseModel):
    """Connection details of one external API."""

    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=30, gt=0)
    enabled: bool = True
    description: str = ""

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def build_url(self, path: str = "") -> str:
        if not path:
            return self.base_url
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def masked_headers(self) -> dict[str, str]:
        return {
            k: "***" if any(marker in k.lower() for marker in SECRET_HEADER_MARKERS) else v
            for k, v in self.headers.items()
        }


class Integration:
    """A registered integration and its request counters."""

    def __init__(self, config: IntegrationConfig):
        self.config = config
        self.requests = 0
        self.errors = 0
        self.last_used_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def record(self, error: Optional[str] = None) -> None:
        self.requests += 1
        self.last_used_at = datetime.now(timezone.utc)
        if error:
            self.errors += 1
            self.last_error = error

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.config.name,
            "base_url": self.config.base_url,
            "headers": self.config.masked_headers(),
            "enabled": self.config.enabled,
            "requests": self.requests,
            "errors": self.errors,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "last_error": self.last_error,
        }


class IntegrationRegistry:
    """Integrations keyed by name."""

    def __init__(self, configs: Optional[list] = None):
        self._integrations: dict[str, Integration] = {}
        for config in configs or []:
            self.register(config)

    def register(self, config) -> Integration:
        """Register an integration from an IntegrationConfig or a plain dict."""
        if not isinstance(config, IntegrationConfig):
            config = IntegrationConfig.model_validate(config)
        if config.name in self._integrations:
            logger.warning("Integration replaced", name=config.name)
        integration = Integration(config)
        self._integrations[config.name] = integration
        logger.info("Integration registered", name=config.name, base_url=config.base_url)
        return integration

    def remove(self, name: str) -> bool:
        return self._integrations.pop(name, None) is not None

    def get(self, name: str) -> Optional[Integration]:
        return self._integrations.get(name)

    def snapshot(self) -> list[dict[str, Any]]:
        return [i.snapshot() for i in self._integrations.values()]
