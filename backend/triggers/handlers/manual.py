"""Manual and API trigger handlers.

These triggers have no source of their own: the operator (or an API
caller) fires the workflow directly through the TriggerManager.
"""

from core.constants import TriggerType
from triggers.base import BaseTriggerHandler, TriggerResult
from workflow.models import TriggerConfig


class ManualTriggerHandler(BaseTriggerHandler):
    trigger_type = TriggerType.MANUAL

    def __init__(self):
        super().__init__()
        self._armed: set[str] = set()

    async def start(self, workflow_id: str, trigger: TriggerConfig) -> TriggerResult:
        self._armed.add(workflow_id)
        return TriggerResult(success=True, message=f"{self.trigger_type.value} trigger armed", workflow_id=workflow_id)

    async def stop(self, workflow_id: str) -> TriggerResult:
        self._armed.discard(workflow_id)
        return TriggerResult(success=True, message=f"{self.trigger_type.value} trigger disarmed", workflow_id=workflow_id)

    def list_active(self) -> list[str]:
        return sorted(self._armed)


class ApiTriggerHandler(ManualTriggerHandler):
    trigger_type = TriggerType.API
