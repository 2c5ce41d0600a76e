"""Workflow service: definition lifecycle + execution dispatch.

Operator-facing facade over the engine components. It owns the workflow
definitions and the execution history, arms triggers on activation and
turns every accepted trigger firing into a queued (or deferred) execution.
"""

import logging
import uuid
from collections import Counter, OrderedDict
from typing import Any, Optional, Union

from pydantic import ValidationError

from core import metrics
from core.constants import (
    LOG_LEVEL_ORDER,
    ExecutionStatus,
    LogLevel,
    OverflowPolicy,
    RunEvent,
    TriggerType,
    WorkflowStatus,
)
from core.exceptions import (
    ConcurrencyLimitError,
    ExecutionNotFoundError,
    InvalidStateError,
    TriggerError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from steps.registry import StepHandlerRegistry
from triggers.base import TriggerEvent
from triggers.manager import TriggerManager
from workflow.context import ExecutionContext
from workflow.dispatcher import Dispatcher, RunRequest
from workflow.engine import WorkflowEngine
from workflow.execution import Execution
from workflow.models import (
    STRUCTURAL_FIELDS,
    StepDefinition,
    WorkflowDefinition,
    WorkflowSettings,
    WorkflowUpdate,
    utcnow,
    validate_definition,
)
from workflow.registry import WorkflowRegistry

logger = logging.getLogger(__name__)

NOTIFY_ON_EVENT = {
    RunEvent.RUN_COMPLETED: "on_success",
    RunEvent.RUN_FAILED: "on_failure",
    RunEvent.RUN_TIMED_OUT: "on_failure",
}


def _problems_from(error: ValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()]


class WorkflowService:
    """Service for workflow management and execution."""

    def __init__(
        self,
        engine: WorkflowEngine,
        dispatcher: Dispatcher,
        registry: WorkflowRegistry,
        trigger_manager: TriggerManager,
        step_handlers: StepHandlerRegistry,
        persistence=None,
        notifier=None,
        max_execution_history: int = 1000,
        step_timeout: float = 300,
        execution_timeout: float = 300,
        max_step_visits: int = 100,
    ):
        self._engine = engine
        self._dispatcher = dispatcher
        self._registry = registry
        self._triggers = trigger_manager
        self._handlers = step_handlers
        self._persistence = persistence
        self._notifier = notifier
        self._max_history = max_execution_history
        self._step_timeout = step_timeout
        self._settings_defaults = {"execution_timeout": execution_timeout, "max_step_visits": max_step_visits}

        self._workflows: dict[str, WorkflowDefinition] = {}
        self._executions: OrderedDict[str, Execution] = OrderedDict()

        self._triggers.set_event_callback(self._on_trigger)
        self._engine.add_listener(self._on_run_event)

    # ─── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        await self._dispatcher.start()
        logger.info("Workflow service started")

    async def shutdown(self, grace_period: float = 5.0) -> None:
        """Disarm triggers, cancel every outstanding run and stop the dispatcher.

        Running executions are asked to stop between steps; whatever is
        still running after ``grace_period`` seconds is cancelled hard.
        """
        await self._triggers.shutdown()

        for request in self._registry.drain_deferred():
            await self._engine.finalize(request.execution, ExecutionStatus.CANCELLED, "Service shutting down")

        for execution in list(self._executions.values()):
            if execution.status == ExecutionStatus.PENDING and not await self._dispatcher.cancel_queued(execution.id):
                execution.cancel_requested = True

        for execution_id in self._engine.get_running_executions():
            self._engine.cancel_execution(execution_id)

        await self._dispatcher.stop(timeout=grace_period)
        logger.info("Workflow service stopped")

    # ─── Definitions ───────────────────────────────────────────

    async def create_workflow(
        self,
        data: Union[dict, WorkflowDefinition],
        created_by: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Create a new workflow in ``draft`` status.

        Raises:
            WorkflowValidationError: If the definition is malformed
        """
        try:
            definition = (
                data.model_copy(deep=True)
                if isinstance(data, WorkflowDefinition)
                else WorkflowDefinition.model_validate(data)
            )
        except ValidationError as e:
            raise WorkflowValidationError(problems=_problems_from(e))

        if definition.id in self._workflows:
            raise WorkflowValidationError(problems=[f"Workflow {definition.id} already exists"])

        now = utcnow()
        definition = definition.model_copy(
            update={
                "status": WorkflowStatus.DRAFT,
                "version": 1,
                "created_by": created_by or definition.created_by,
                "created_at": now,
                "updated_at": now,
                "last_executed_at": None,
                "execution_count": 0,
            }
        )
        definition = definition.model_copy(
            update={
                "steps": self._with_step_defaults(definition.steps),
                "settings": self._with_settings_defaults(definition.settings),
            }
        )
        validate_definition(definition, self._handlers)

        self._workflows[definition.id] = definition
        await self._save_definition(definition)
        logger.info(f"Workflow created: {definition.id} ({definition.name})")
        return definition

    async def update_workflow(
        self,
        workflow_id: str,
        update: Union[dict, WorkflowUpdate],
    ) -> WorkflowDefinition:
        """Apply a partial update; structural edits bump the version.

        Runs already in flight keep executing the version they started with.
        An active workflow is re-validated and its trigger re-armed.
        """
        current = self.get_workflow(workflow_id)
        if current.status == WorkflowStatus.ARCHIVED:
            raise InvalidStateError(f"Workflow {workflow_id} is archived")

        try:
            if not isinstance(update, WorkflowUpdate):
                update = WorkflowUpdate.model_validate(update)
        except ValidationError as e:
            raise WorkflowValidationError(problems=_problems_from(e))

        changes: dict[str, Any] = {name: getattr(update, name) for name in update.model_fields_set}
        changes = {name: value for name, value in changes.items() if value is not None}
        if not changes:
            return current

        if "steps" in changes:
            changes["steps"] = self._with_step_defaults(changes["steps"])
        if "settings" in changes:
            changes["settings"] = self._with_settings_defaults(changes["settings"])
        if STRUCTURAL_FIELDS & changes.keys():
            changes["version"] = current.version + 1
        changes["updated_at"] = utcnow()

        try:
            definition = WorkflowDefinition.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            raise WorkflowValidationError(problems=_problems_from(e))

        is_active = definition.status == WorkflowStatus.ACTIVE
        validate_definition(definition, self._handlers, for_activation=is_active)

        if is_active:
            if "trigger" in changes:
                await self._arm(definition)
            self._registry.put(definition)

        self._workflows[workflow_id] = definition
        await self._save_definition(definition)
        logger.info(f"Workflow updated: {workflow_id} (version {definition.version})")
        return definition

    async def activate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Validate a workflow, arm its trigger and make it runnable.

        Raises:
            InvalidStateError: If the workflow is archived
            WorkflowValidationError: If the workflow cannot run
            TriggerError: If the trigger could not be armed
        """
        definition = self.get_workflow(workflow_id)
        if definition.status == WorkflowStatus.ARCHIVED:
            raise InvalidStateError(f"Workflow {workflow_id} is archived")
        if definition.status == WorkflowStatus.ACTIVE:
            return definition

        validate_definition(definition, self._handlers, for_activation=True)
        await self._arm(definition)

        definition = self._set_status(definition, WorkflowStatus.ACTIVE)
        self._registry.put(definition)
        await self._save_definition(definition)
        logger.info(f"Workflow activated: {workflow_id}")
        return definition

    async def deactivate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Disarm the trigger; runs in flight finish, deferred runs are cancelled."""
        definition = self.get_workflow(workflow_id)
        if definition.status != WorkflowStatus.ACTIVE:
            raise InvalidStateError(f"Workflow {workflow_id} is not active")

        await self._triggers.disarm(workflow_id)
        for request in self._registry.drain_deferred(workflow_id):
            await self._engine.finalize(request.execution, ExecutionStatus.CANCELLED, "Workflow deactivated")
        self._registry.remove(workflow_id)

        definition = self._set_status(definition, WorkflowStatus.INACTIVE)
        await self._save_definition(definition)
        logger.info(f"Workflow deactivated: {workflow_id}")
        return definition

    async def archive_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = self.get_workflow(workflow_id)
        if definition.status == WorkflowStatus.ACTIVE:
            definition = await self.deactivate_workflow(workflow_id)
        definition = self._set_status(definition, WorkflowStatus.ARCHIVED)
        await self._save_definition(definition)
        logger.info(f"Workflow archived: {workflow_id}")
        return definition

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._workflows.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> list[WorkflowDefinition]:
        workflows = sorted(self._workflows.values(), key=lambda w: w.created_at)
        if status is not None:
            workflows = [w for w in workflows if w.status == status]
        return workflows

    # ─── Executions ────────────────────────────────────────────

    async def trigger_workflow(
        self,
        workflow_id: str,
        payload: Optional[dict] = None,
        triggered_by: str = "manual",
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> Optional[Execution]:
        """Fire a workflow on demand.

        Returns:
            The new execution, or None when trigger conditions discarded the firing

        Raises:
            InvalidStateError: If the workflow is not active
            ConcurrencyLimitError: If the gate refused the run with overflow ``reject``
        """
        definition = self.get_workflow(workflow_id)
        if definition.status != WorkflowStatus.ACTIVE:
            raise InvalidStateError(f"Workflow {workflow_id} is not active")

        result = await self._triggers.fire(workflow_id, payload or {}, triggered_by, trigger_type)
        if result.discarded or result.execution_id is None:
            return None
        return self._executions[result.execution_id]

    async def cancel_execution(self, execution_id: str) -> Execution:
        """Cancel an execution wherever it currently is.

        A running execution stops before its next step; a queued or
        deferred one is cancelled immediately.

        Raises:
            InvalidStateError: If the execution already finished
        """
        execution = self.get_execution(execution_id)
        if execution.is_terminal:
            raise InvalidStateError(f"Execution {execution_id} is already {execution.status.value}")

        if self._engine.cancel_execution(execution_id):
            return execution

        deferred = self._registry.discard_deferred(execution.workflow_id, lambda r: r.execution.id == execution_id)
        if deferred is not None:
            await self._engine.finalize(execution, ExecutionStatus.CANCELLED, "Execution cancelled while deferred")
            return execution

        if await self._dispatcher.cancel_queued(execution_id):
            return execution

        # Between dequeue and start: the engine checks the flag before the first step
        execution.cancel_requested = True
        return execution

    def get_execution(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def list_executions(self, workflow_id: Optional[str] = None, limit: int = 50) -> list[Execution]:
        """Executions, newest first."""
        executions = reversed(self._executions.values())
        if workflow_id is not None:
            executions = (e for e in executions if e.workflow_id == workflow_id)
        result = []
        for execution in executions:
            if len(result) >= limit:
                break
            result.append(execution)
        return result

    def get_execution_logs(self, execution_id: str, level: Optional[LogLevel] = None) -> list[dict]:
        """Log entries of an execution, optionally at or above ``level``."""
        execution = self.get_execution(execution_id)
        threshold = LOG_LEVEL_ORDER[LogLevel(level)] if level else 0
        return [entry.to_dict() for entry in execution.logs if LOG_LEVEL_ORDER[entry.level] >= threshold]

    def get_stats(self) -> dict[str, Any]:
        workflows = Counter(w.status.value for w in self._workflows.values())
        executions = Counter(e.status.value for e in self._executions.values())
        return {
            "workflows": {"total": len(self._workflows), **workflows},
            "executions": {"total": len(self._executions), **executions},
            "running": len(self._engine.get_running_executions()),
            "queued": self._dispatcher.pending_count,
            "deferred": sum(self._registry.deferred_count(wid) for wid in self._workflows),
            "triggers": self._triggers.get_status(),
            "metrics": {
                "executions_total": {
                    status.value: metrics.get_counter(metrics.EXECUTIONS_TOTAL, {"status": status.value})
                    for status in ExecutionStatus
                    if status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
                },
                "running_gauge": metrics.get_gauge(metrics.EXECUTIONS_RUNNING),
            },
        }

    # ─── Internals ─────────────────────────────────────────────

    async def _arm(self, definition: WorkflowDefinition) -> None:
        result = await self._triggers.arm(definition.id, definition.trigger)
        if not result.success:
            await self._triggers.disarm(definition.id)
            raise TriggerError(result.message)

    def _with_step_defaults(self, steps: list[StepDefinition]) -> list[StepDefinition]:
        return [
            step if "timeout" in step.model_fields_set else step.model_copy(update={"timeout": self._step_timeout})
            for step in steps
        ]

    def _with_settings_defaults(self, settings: WorkflowSettings) -> WorkflowSettings:
        missing = {k: v for k, v in self._settings_defaults.items() if k not in settings.model_fields_set}
        return settings.model_copy(update=missing) if missing else settings

    def _set_status(self, definition: WorkflowDefinition, status: WorkflowStatus) -> WorkflowDefinition:
        definition = definition.model_copy(update={"status": status, "updated_at": utcnow()})
        self._workflows[definition.id] = definition
        return definition

    async def _on_trigger(self, event: TriggerEvent) -> str:
        """Turn an accepted trigger firing into an execution."""
        definition = self._registry.get(event.workflow_id)
        if definition is None or definition.status != WorkflowStatus.ACTIVE:
            raise InvalidStateError(f"Workflow {event.workflow_id} is not active")

        variables = definition.initial_variables()
        overrides = event.payload.get("variables")
        if isinstance(overrides, dict):
            variables.update(overrides)

        missing = [v.name for v in definition.variables if v.required and variables.get(v.name) is None]
        if missing:
            raise WorkflowValidationError(problems=[f"Missing required variable: {name}" for name in missing])

        execution_id = str(uuid.uuid4())
        execution = Execution(
            id=execution_id,
            workflow_id=definition.id,
            workflow_version=definition.version,
            context=ExecutionContext.create(definition.id, execution_id, variables, event.payload),
            triggered_by=event.triggered_by,
            trigger_type=event.trigger_type,
            trigger_payload=event.payload,
        )
        await self._start_execution(definition, execution)
        return execution_id

    async def _start_execution(self, definition: WorkflowDefinition, execution: Execution) -> None:
        """Pass an execution through the concurrency gate."""
        request = RunRequest(execution=execution, definition=definition)

        if self._registry.admit(definition.id):
            self._remember(execution)
            await self._save_execution(execution)
            self._dispatcher.enqueue(request)
        elif definition.settings.overflow == OverflowPolicy.QUEUE:
            self._remember(execution)
            await self._save_execution(execution)
            backlog = self._registry.defer(definition.id, request)
            logger.info(f"Execution {execution.id} deferred for workflow {definition.id} ({backlog} waiting)")
        else:
            limit = definition.settings.max_concurrent_executions
            logger.warning(f"Concurrency limit reached for workflow {definition.id} ({limit})")
            raise ConcurrencyLimitError(definition.id, limit)

        stored = self._workflows.get(definition.id)
        if stored is not None:
            self._workflows[definition.id] = stored.model_copy(
                update={"last_executed_at": utcnow(), "execution_count": stored.execution_count + 1}
            )

        notifications = definition.settings.notifications
        if notifications.on_start:
            await self._notify(definition, execution, "workflow_started", f"Workflow started: {definition.name}")

    def _remember(self, execution: Execution) -> None:
        self._executions[execution.id] = execution
        excess = len(self._executions) - self._max_history
        if excess <= 0:
            return
        # oldest first; live runs are kept wherever they sit
        evictable = [eid for eid, e in self._executions.items() if e.is_terminal][:excess]
        for eid in evictable:
            self._executions.pop(eid)

    async def _on_run_event(self, event: RunEvent, execution: Execution) -> None:
        definition = self._workflows.get(execution.workflow_id)
        if definition is None:
            return
        flag = NOTIFY_ON_EVENT.get(event)
        if flag is None or not getattr(definition.settings.notifications, flag):
            return
        message = f"Workflow {execution.status.value}: {definition.name}"
        if execution.error:
            message = f"{message} ({execution.error})"
        await self._notify(definition, execution, f"workflow_{execution.status.value}", message)

    async def _notify(self, definition: WorkflowDefinition, execution: Execution, type: str, message: str) -> None:
        notifications = definition.settings.notifications
        if self._notifier is None or not notifications.recipients:
            return
        try:
            await self._notifier.notify(
                type,
                notifications.recipients,
                message,
                message,
                data={"workflow_id": definition.id, "execution_id": execution.id, "status": execution.status.value},
                channels=notifications.channels,
            )
        except Exception as e:
            logger.error(f"Notification for execution {execution.id} failed: {e}")

    async def _save_definition(self, definition: WorkflowDefinition) -> None:
        if self._persistence is None:
            return
        try:
            await self._persistence.save_definition(definition)
        except Exception as e:
            logger.error(f"Failed to persist workflow {definition.id}: {e}")

    async def _save_execution(self, execution: Execution) -> None:
        if self._persistence is None:
            return
        try:
            await self._persistence.save_execution(execution)
        except Exception as e:
            logger.error(f"Failed to persist execution {execution.id}: {e}")
