"""
Base handler interface for all workflow step types.

Every step type (create record, call external API, wait, etc.) has exactly
one handler that inherits from BaseStepHandler and implements execute().
Handlers keep no per-call state; collaborators are injected once at
construction time.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from core.constants import StepType
from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


class StepOutcome:
    """Standardized result from a step handler."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.metadata = metadata or {}
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    @classmethod
    def ok(cls, output: Any = None, **metadata) -> "StepOutcome":
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def fail(cls, error: str, output: Any = None) -> "StepOutcome":
        return cls(success=False, output=output, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseStepHandler(ABC):
    """
    Abstract base class for step handlers.

    Subclasses must implement:
    - execute(config, context) -> StepOutcome
    - step_type (class attribute)
    - display_name (class attribute)
    """

    step_type: StepType
    display_name: str = "Base Step"
    description: str = "Abstract base step"
    required_fields: tuple = ()

    @abstractmethod
    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        """
        Execute the step with its resolved configuration.

        Args:
            config: Step configuration with placeholders already resolved
            context: Execution context of the run (variables, step results)

        Returns:
            StepOutcome with output or error
        """

    def validate_config(self, config: Dict[str, Any]) -> bool:
        """Check the raw (unresolved) config at activation time."""
        if not isinstance(config, dict):
            return False
        return all(config.get(name) not in (None, "") for name in self.required_fields)

    async def run(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        """
        Run the handler with timing and error handling.

        This is the entry point called by the step executor. A raised
        exception becomes a failed outcome; cancellation propagates.
        """
        start = time.monotonic()
        try:
            logger.debug(
                "Step handler starting",
                step_type=self.step_type.value,
                handler=self.display_name,
                execution_id=context.execution_id,
            )
            outcome = await self.execute(config, context)
            outcome.duration_ms = (time.monotonic() - start) * 1000

            logger.debug(
                "Step handler finished",
                step_type=self.step_type.value,
                success=outcome.success,
                duration_ms=round(outcome.duration_ms, 2),
            )
            return outcome

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.warning(
                "Step handler raised",
                step_type=self.step_type.value,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return StepOutcome(success=False, error=str(e) or type(e).__name__, duration_ms=duration_ms)

    @classmethod
    def describe_config(cls) -> Dict[str, Any]:
        """
        Return JSON schema for the step configuration.

        Override in subclasses to define the expected config shape.
        """
        return {"type": "object", "required": list(cls.required_fields), "properties": {}}
