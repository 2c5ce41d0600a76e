"""Flow-control steps: condition evaluation and waiting."""

import asyncio
from typing import Any, Dict

from pydantic import ValidationError

from core.constants import LogicalOperator, StepType
from steps.base_step import BaseStepHandler, StepOutcome
from workflow import conditions as condition_evaluator
from workflow.context import ExecutionContext
from workflow.models import Condition

UNIT_TO_MS = {
    "milliseconds": 1,
    "seconds": 1000,
    "minutes": 60_000,
    "hours": 3_600_000,
}


class EvaluateConditionStep(BaseStepHandler):
    """Evaluate a condition list and expose the result to later steps.

    Config:
        conditions: List of {field, operator, value, source} (required)
        logical_operator: and | or (default: and)
        fail_when_false: Turn a false result into a step failure (default: false)
    """

    step_type = StepType.EVALUATE_CONDITION
    display_name = "Evaluate Condition"
    description = "Evaluate conditions against the execution context"

    def validate_config(self, config: Dict[str, Any]) -> bool:
        conditions = config.get("conditions")
        if not isinstance(conditions, list):
            return False
        try:
            for item in conditions:
                Condition.model_validate(item)
            LogicalOperator(config.get("logical_operator", "and"))
        except (ValidationError, ValueError):
            return False
        return True

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        if not self.validate_config(config):
            return StepOutcome.fail("Invalid conditions config")

        met, results = condition_evaluator.evaluate_with_details(
            config["conditions"],
            context,
            config.get("logical_operator", "and"),
        )
        output = {"condition_met": met, "results": results}
        if not met and config.get("fail_when_false"):
            return StepOutcome.fail("Condition not met", output=output)
        return StepOutcome.ok(output)


class WaitStep(BaseStepHandler):
    """Pause the run.

    Config:
        duration: Amount of time (required)
        unit: milliseconds | seconds | minutes | hours (default: seconds)
    """

    step_type = StepType.WAIT
    display_name = "Wait"
    description = "Delay the next step"

    def __init__(self, sleep=None):
        self._sleep = sleep or asyncio.sleep

    def validate_config(self, config: Dict[str, Any]) -> bool:
        if config.get("unit", "seconds") not in UNIT_TO_MS:
            return False
        duration = config.get("duration")
        if isinstance(duration, str) and "{{" in duration:
            return True
        try:
            return float(duration) >= 0
        except (TypeError, ValueError):
            return False

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        unit = config.get("unit", "seconds")
        if unit not in UNIT_TO_MS:
            return StepOutcome.fail(f"Unknown unit: {unit}")
        try:
            delay_ms = int(float(config.get("duration", 0)) * UNIT_TO_MS[unit])
        except (TypeError, ValueError):
            return StepOutcome.fail(f"Invalid duration: {config.get('duration')!r}")
        if delay_ms < 0:
            return StepOutcome.fail("Duration must not be negative")

        await self._sleep(delay_ms / 1000)
        return StepOutcome.ok({"delayed_ms": delay_ms})

    @classmethod
    def describe_config(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["duration"],
            "properties": {
                "duration": {"type": "number", "minimum": 0},
                "unit": {"type": "string", "enum": list(UNIT_TO_MS), "default": "seconds"},
            },
        }
