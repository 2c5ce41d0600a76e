"""Trigger Manager: central orchestrator for all trigger types.

The TriggerManager:
1. Registers trigger handlers for each trigger type
2. Arms and disarms a workflow's trigger when it is activated or deactivated
3. Evaluates trigger conditions against the raw payload of every firing
4. Routes accepted firings to the event callback installed by the workflow service
"""

import json
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Union

from core.constants import TriggerType
from core.exceptions import TriggerError, WorkflowEngineError
from triggers.base import BaseTriggerHandler, TriggerEvent, TriggerResult
from triggers.handlers.event_bus import BaseEventBus, EventBusTriggerHandler, InMemoryEventBus
from triggers.handlers.manual import ApiTriggerHandler, ManualTriggerHandler
from triggers.handlers.schedule import ScheduleTriggerHandler
from triggers.handlers.webhook import WebhookTriggerHandler
from workflow import conditions
from workflow.models import TriggerConfig

logger = logging.getLogger(__name__)

# Receives an accepted firing and returns the id of the execution it created
EventCallback = Callable[[TriggerEvent], Awaitable[Optional[str]]]


class TriggerManager:
    """Central manager for all workflow triggers.

    One instance per process, constructed by the application container.
    """

    def __init__(
        self,
        event_bus: Optional[BaseEventBus] = None,
        handlers: Optional[list[BaseTriggerHandler]] = None,
    ):
        self._event_bus = event_bus or InMemoryEventBus()
        self._handlers: dict[TriggerType, BaseTriggerHandler] = {}
        self._configs: dict[str, TriggerConfig] = {}
        self._armed: dict[str, dict[str, Any]] = {}
        self._event_callback: Optional[EventCallback] = None

        self._register_builtin_handlers()
        for handler in handlers or []:
            self.register_handler(handler)

    def _register_builtin_handlers(self) -> None:
        self.register_handler(ManualTriggerHandler())
        self.register_handler(ApiTriggerHandler())
        self.register_handler(ScheduleTriggerHandler())
        self.register_handler(EventBusTriggerHandler(self._event_bus))
        self.register_handler(WebhookTriggerHandler())

    def register_handler(self, handler: BaseTriggerHandler) -> None:
        """Register (or replace) the handler for a trigger type."""
        handler.set_fire_callback(partial(self._fire_from_source, handler.trigger_type))
        self._handlers[handler.trigger_type] = handler
        logger.info(f"Registered trigger handler: {handler.trigger_type.value}")

    def get_handler(self, trigger_type: TriggerType) -> Optional[BaseTriggerHandler]:
        return self._handlers.get(trigger_type)

    def set_event_callback(self, callback: EventCallback) -> None:
        """Set the callback invoked for every accepted firing.

        Args:
            callback: Async callable(TriggerEvent) -> execution id
        """
        self._event_callback = callback

    @property
    def event_bus(self) -> BaseEventBus:
        return self._event_bus

    # ─── Lifecycle ─────────────────────────────────────────────

    async def arm(self, workflow_id: str, trigger: TriggerConfig) -> TriggerResult:
        """Start listening for a workflow's trigger.

        A disabled trigger is remembered but not armed, so the workflow can
        still be fired manually.
        """
        await self.disarm(workflow_id)
        self._configs[workflow_id] = trigger

        if not trigger.enabled:
            logger.info(f"Trigger for workflow {workflow_id} is disabled, not armed")
            return TriggerResult(success=True, message="Trigger disabled", workflow_id=workflow_id)

        handler = self._handlers.get(trigger.type)
        if handler is None:
            error = f"No handler registered for type '{trigger.type.value}'"
            return TriggerResult(success=False, message=error, workflow_id=workflow_id, error=error)

        is_valid, error = handler.validate_config(trigger)
        if not is_valid:
            return TriggerResult(
                success=False,
                message=f"Invalid configuration: {error}",
                workflow_id=workflow_id,
                error=error,
            )

        result = await handler.start(workflow_id, trigger)
        if result.success:
            self._armed[workflow_id] = {
                "type": trigger.type,
                "started_at": datetime.now(timezone.utc).isoformat(),
            }
            logger.info(f"Trigger armed: {workflow_id} ({trigger.type.value})")
        return result

    async def disarm(self, workflow_id: str) -> TriggerResult:
        """Stop listening for a workflow's trigger and forget its configuration."""
        self._configs.pop(workflow_id, None)
        info = self._armed.pop(workflow_id, None)
        if info is None:
            return TriggerResult(success=True, message="Trigger not armed", workflow_id=workflow_id)

        result = await self._handlers[info["type"]].stop(workflow_id)
        logger.info(f"Trigger disarmed: {workflow_id}")
        return result

    async def test(self, trigger: TriggerConfig) -> TriggerResult:
        """Validate a trigger configuration without arming it."""
        handler = self._handlers.get(trigger.type)
        if handler is None:
            return TriggerResult(success=False, message=f"Unknown trigger type: {trigger.type.value}", workflow_id="test")
        return await handler.test(trigger)

    def is_armed(self, workflow_id: str) -> bool:
        return workflow_id in self._armed

    async def shutdown(self) -> None:
        """Disarm every trigger and close the event bus."""
        for workflow_id in list(self._configs):
            await self.disarm(workflow_id)
        await self._event_bus.close()
        logger.info("Trigger manager shut down")

    # ─── Firing ────────────────────────────────────────────────

    async def fire(
        self,
        workflow_id: str,
        payload: Optional[dict] = None,
        triggered_by: str = "manual",
        trigger_type: Optional[TriggerType] = None,
    ) -> TriggerResult:
        """Fire a workflow's trigger.

        Trigger conditions are evaluated against the raw payload; a firing
        that fails them is discarded without creating an execution.

        Raises:
            TriggerError: If the workflow has no registered trigger
            WorkflowEngineError: Whatever the event callback raises
                (for example ConcurrencyLimitError)
        """
        trigger = self._configs.get(workflow_id)
        if trigger is None:
            raise TriggerError(f"Workflow {workflow_id} has no registered trigger", status_code=404)

        payload = payload or {}
        trigger_type = trigger_type or trigger.type

        if not conditions.evaluate_payload(trigger.conditions, payload, trigger.logical_operator):
            logger.debug(f"Trigger conditions not met for workflow {workflow_id}, firing discarded")
            return TriggerResult(
                success=True,
                message="Trigger conditions not met",
                workflow_id=workflow_id,
                discarded=True,
            )

        if self._event_callback is None:
            logger.warning(f"Trigger fired but no event callback set: {workflow_id}")
            return TriggerResult(
                success=False,
                message="No event callback set",
                workflow_id=workflow_id,
                error="No event callback set",
            )

        event = TriggerEvent(
            workflow_id=workflow_id,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
            payload=payload,
        )
        execution_id = await self._event_callback(event)
        logger.info(f"Trigger fired: {workflow_id} ({trigger_type.value}) -> execution {execution_id}")
        return TriggerResult(
            success=True,
            message="Trigger fired successfully",
            workflow_id=workflow_id,
            execution_id=execution_id,
        )

    async def publish(self, event_name: str, payload: Optional[dict] = None) -> int:
        """Publish an event on the bus; event triggers subscribed to it fire."""
        return await self._event_bus.publish(event_name, payload or {})

    async def handle_webhook(
        self,
        path: str,
        body: Union[bytes, str, dict, None],
        signature: Optional[str] = None,
    ) -> TriggerResult:
        """Handle an inbound webhook call.

        Raises:
            TriggerError: 404 for an unknown path, 401 for a bad signature,
                400 for a body that is not a JSON object
        """
        handler: WebhookTriggerHandler = self._handlers[TriggerType.WEBHOOK]
        workflow_id = handler.get_workflow_for_path(path)
        if workflow_id is None:
            raise TriggerError(f"No webhook registered at {path}", status_code=404)

        if isinstance(body, bytes):
            raw = body
        elif isinstance(body, dict):
            raw = json.dumps(body, sort_keys=True).encode()
        else:
            raw = (body or "").encode()

        if not handler.verify_signature(workflow_id, raw, signature):
            logger.warning(f"Webhook signature mismatch for {path}")
            raise TriggerError("Invalid webhook signature", status_code=401)

        payload = body if isinstance(body, dict) else self._parse_body(raw)
        return await self.fire(workflow_id, payload, triggered_by=f"webhook:{path}", trigger_type=TriggerType.WEBHOOK)

    async def _fire_from_source(
        self,
        trigger_type: TriggerType,
        workflow_id: str,
        payload: dict,
        triggered_by: str,
    ) -> TriggerResult:
        """Fire on behalf of a background source; errors are logged, not raised."""
        try:
            return await self.fire(workflow_id, payload, triggered_by=triggered_by, trigger_type=trigger_type)
        except WorkflowEngineError as e:
            logger.warning(f"Trigger fire rejected for workflow {workflow_id}: {e.message}")
            return TriggerResult(success=False, message=e.message, workflow_id=workflow_id, error=e.message)

    @staticmethod
    def _parse_body(raw: bytes) -> dict:
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise TriggerError("Webhook body must be JSON", status_code=400)
        if not isinstance(payload, dict):
            raise TriggerError("Webhook body must be a JSON object", status_code=400)
        return payload

    # ─── Status ────────────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        """Get trigger manager status."""
        schedule: ScheduleTriggerHandler = self._handlers[TriggerType.SCHEDULE]
        triggers = {}
        for workflow_id, info in self._armed.items():
            entry = {"type": info["type"].value, "started_at": info["started_at"]}
            next_fire = schedule.next_fire_time(workflow_id)
            if info["type"] == TriggerType.SCHEDULE and next_fire is not None:
                entry["next_fire_at"] = next_fire.isoformat()
            triggers[workflow_id] = entry
        return {
            "registered_handlers": [t.value for t in self._handlers],
            "registered_triggers": len(self._configs),
            "active_triggers": len(self._armed),
            "triggers": triggers,
        }
