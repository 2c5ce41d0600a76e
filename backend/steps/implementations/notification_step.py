"""Notification step: sends a message through the notifier collaborator."""

from typing import Any, Dict

from core.constants import StepType
from steps.base_step import BaseStepHandler, StepOutcome
from workflow.context import ExecutionContext


def _as_list(value: Any) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


class SendNotificationStep(BaseStepHandler):
    """Send a notification.

    Config:
        type: Notification type (default: workflow)
        recipients: User id or list of user ids (required)
        title: Notification title (required)
        message: Notification body (required)
        data: Extra payload
        channels: Channel override, e.g. ["in_app", "webhook"]
    """

    step_type = StepType.SEND_NOTIFICATION
    display_name = "Send Notification"
    description = "Notify users about workflow progress"
    required_fields = ("recipients", "title", "message")

    def __init__(self, notifier):
        self._notifier = notifier

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        recipients = _as_list(config.get("recipients"))
        if not recipients:
            return StepOutcome.fail("No recipients")

        kwargs = {}
        if config.get("channels"):
            kwargs["channels"] = config["channels"]

        delivered = await self._notifier.notify(
            config.get("type", "workflow"),
            recipients,
            config.get("title", ""),
            config.get("message", ""),
            config.get("data") or {},
            **kwargs,
        )
        if not delivered:
            return StepOutcome.fail("Notification delivery failed", output={"notifications_sent": 0})
        return StepOutcome.ok({"notifications_sent": len(recipients)})

    @classmethod
    def describe_config(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["recipients", "title", "message"],
            "properties": {
                "type": {"type": "string", "default": "workflow"},
                "recipients": {"type": ["array", "string"], "items": {"type": "string"}},
                "title": {"type": "string"},
                "message": {"type": "string"},
                "data": {"type": "object"},
                "channels": {"type": "array", "items": {"type": "string"}},
            },
        }
