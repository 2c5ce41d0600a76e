"""Base trigger classes shared by every trigger type."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from core.constants import TriggerType
from workflow.models import TriggerConfig

# Called by a handler when its source fires: (workflow_id, payload, triggered_by)
FireCallback = Callable[[str, dict, str], Awaitable[Any]]


@dataclass
class TriggerEvent:
    """A single trigger firing on its way to the engine."""

    workflow_id: str
    trigger_type: TriggerType
    triggered_by: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TriggerResult:
    """Result of a trigger operation (arm/disarm/fire)."""

    success: bool
    message: str
    workflow_id: str
    execution_id: Optional[str] = None
    error: Optional[str] = None
    discarded: bool = False


class BaseTriggerHandler(ABC):
    """Abstract base class for all trigger type handlers.

    Each trigger type implements this interface. The TriggerManager uses
    these handlers to arm and disarm workflows; a handler whose source
    fires on its own (schedule, event, webhook) reports firings through the
    callback the manager installs.
    """

    trigger_type: TriggerType

    def __init__(self):
        self._fire_callback: Optional[FireCallback] = None

    def set_fire_callback(self, callback: FireCallback) -> None:
        self._fire_callback = callback

    @abstractmethod
    async def start(self, workflow_id: str, trigger: TriggerConfig) -> TriggerResult:
        """Start listening for this workflow's trigger."""
        ...

    @abstractmethod
    async def stop(self, workflow_id: str) -> TriggerResult:
        """Stop listening for this workflow's trigger."""
        ...

    async def test(self, trigger: TriggerConfig) -> TriggerResult:
        """Validate a trigger configuration without arming it."""
        is_valid, error = self.validate_config(trigger)
        if not is_valid:
            return TriggerResult(success=False, message=f"Invalid config: {error}", workflow_id="test", error=error)
        return TriggerResult(success=True, message="Trigger configuration is valid", workflow_id="test")

    def validate_config(self, trigger: TriggerConfig) -> tuple[bool, Optional[str]]:
        """Validate trigger configuration.

        Returns:
            Tuple of (is_valid, error_message)
        """
        return True, None

    def list_active(self) -> list[str]:
        return []
