"""Custom step: dispatches to a named callable from the custom action table."""

import inspect
from typing import Any, Callable, Dict, Optional

from core.constants import StepType
from steps.base_step import BaseStepHandler, StepOutcome
from workflow.context import ExecutionContext


class CustomActionTable:
    """Named callables available to ``custom`` steps.

    An action is called as ``action(params, context)`` and may be sync or
    async; its return value becomes the step output.
    """

    def __init__(self):
        self._actions: Dict[str, Callable] = {}

    def register(self, name: str, action: Callable) -> None:
        self._actions[name] = action

    def action(self, name: str) -> Callable:
        """Decorator form of ``register``."""
        def decorator(fn: Callable) -> Callable:
            self.register(name, fn)
            return fn
        return decorator

    def get(self, name: str) -> Optional[Callable]:
        return self._actions.get(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._actions)


class CustomStep(BaseStepHandler):
    """Run a registered custom action.

    Config:
        action: Name of a registered action (required)
        params: Parameters passed to the action
    """

    step_type = StepType.CUSTOM
    display_name = "Custom Action"
    description = "Run an application-defined action"
    required_fields = ("action",)

    def __init__(self, actions: CustomActionTable):
        self._actions = actions

    def validate_config(self, config: Dict[str, Any]) -> bool:
        return super().validate_config(config) and self._actions.get(config["action"]) is not None

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        name = config.get("action")
        action = self._actions.get(name) if name else None
        if action is None:
            return StepOutcome.fail(f"Unknown custom action: {name}")

        result = action(config.get("params") or {}, context)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome.ok(result)
