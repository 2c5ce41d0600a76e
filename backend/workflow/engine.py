"""Workflow Execution Engine: drives one run from its first step to a terminal status.

States: pending -> running -> completed | failed | cancelled | timed_out.

- Workflow-level conditions gate the run before the first step.
- Steps run strictly in sequence, starting at the lowest-order enabled step.
- After each step the next one is chosen from ``on_success`` / ``on_failure``
  or declared order, depending on the outcome and the error strategy.
- The whole run is bounded by ``settings.execution_timeout``; on expiry the
  in-flight step is cancelled and no further step starts.
- Cancellation is cooperative and checked between steps.
- In every terminal case the run is persisted (best effort), exactly one
  run event is emitted to listeners and metrics are updated. Callers never
  see a raw exception.
"""

import asyncio
import inspect
from collections import Counter
from typing import Callable, Optional

import structlog

from core import metrics
from core.constants import (
    RUN_EVENT_BY_STATUS,
    ErrorStrategy,
    ExecutionStatus,
    LogLevel,
    StepStatus,
)
from workflow import conditions
from workflow.execution import Execution
from workflow.models import WorkflowDefinition
from workflow.step_executor import StepExecutor

logger = structlog.get_logger(__name__)

FAILED_STEP_STATUSES = frozenset({StepStatus.FAILED, StepStatus.TIMED_OUT})


class WorkflowEngine:
    """Main workflow execution engine.

    Listeners are called as ``listener(event, execution)`` once per run and
    may be sync or async.
    """

    def __init__(
        self,
        step_executor: StepExecutor,
        persistence=None,
        listeners: Optional[list[Callable]] = None,
    ):
        self._step_executor = step_executor
        self._persistence = persistence
        self._listeners: list[Callable] = list(listeners or [])
        self._running_executions: dict[str, Execution] = {}

    def add_listener(self, listener: Callable) -> None:
        self._listeners.append(listener)

    # ─── Public API ────────────────────────────────────────────

    async def execute(self, definition: WorkflowDefinition, execution: Execution) -> Execution:
        """Run ``execution`` to a terminal status.

        Returns:
            The same Execution, now terminal
        """
        if execution.is_terminal:
            return execution

        log = logger.bind(workflow_id=execution.workflow_id, execution_id=execution.id)

        if execution.cancel_requested:
            await self.finalize(execution, ExecutionStatus.CANCELLED, "Execution cancelled before start")
            return execution

        execution.log_level = definition.settings.logging.level
        execution.mark_running()
        metrics.record_run_started()
        self._running_executions[execution.id] = execution
        execution.add_log(
            LogLevel.INFO,
            f"Execution started (workflow version {execution.workflow_version})",
            data={"variables": execution.context.variables} if definition.settings.logging.include_variables else None,
        )
        await self._persist(execution)
        log.info("Execution started", trigger_type=execution.trigger_type.value)

        timeout = definition.settings.execution_timeout
        try:
            status, error = await asyncio.wait_for(self._run_steps(definition, execution), timeout=timeout)
        except asyncio.TimeoutError:
            status, error = ExecutionStatus.TIMED_OUT, f"Execution timed out after {timeout}s"
            self._abandon_in_flight(execution)
        except asyncio.CancelledError:
            # Hard stop during shutdown
            self._running_executions.pop(execution.id, None)
            self._abandon_in_flight(execution, StepStatus.FAILED, "cancelled")
            await self.finalize(execution, ExecutionStatus.CANCELLED, "Execution cancelled during shutdown")
            raise
        except Exception as e:
            log.exception("Execution crashed")
            status, error = ExecutionStatus.FAILED, f"Internal error: {e}"
        finally:
            self._running_executions.pop(execution.id, None)

        await self.finalize(execution, status, error)
        return execution

    async def finalize(self, execution: Execution, status: ExecutionStatus, error: Optional[str] = None) -> None:
        """Move a run to a terminal status, persist it, emit its event and update metrics."""
        if execution.is_terminal:
            return
        was_running = execution.status == ExecutionStatus.RUNNING
        execution.finish(status, error)

        level = LogLevel.INFO if status == ExecutionStatus.COMPLETED else LogLevel.ERROR
        message = f"Execution {status.value}"
        if error:
            message = f"{message}: {error}"
        execution.add_log(level, message)

        duration = execution.duration_ms / 1000 if was_running and execution.duration_ms is not None else None
        metrics.record_run_finished(status.value, duration, was_running)
        logger.info(
            "Execution finished",
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            status=status.value,
            duration_ms=execution.duration_ms,
            error=error,
        )

        await self._persist(execution)
        await self._emit(execution)

    def cancel_execution(self, execution_id: str) -> bool:
        """Request cooperative cancellation of a running execution."""
        execution = self._running_executions.get(execution_id)
        if execution is None:
            return False
        execution.cancel_requested = True
        execution.add_log(LogLevel.WARN, "Cancellation requested")
        logger.info("Cancellation requested", execution_id=execution_id)
        return True

    def get_running_executions(self) -> list[str]:
        return list(self._running_executions.keys())

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._running_executions

    # ─── Step loop ─────────────────────────────────────────────

    async def _run_steps(self, definition: WorkflowDefinition, execution: Execution):
        context = execution.context

        if not conditions.evaluate(definition.conditions, context, definition.logical_operator):
            execution.add_log(LogLevel.INFO, "Workflow conditions not met")
            return ExecutionStatus.COMPLETED, None

        step = definition.first_step()
        if step is None:
            execution.add_log(LogLevel.WARN, "Workflow has no enabled steps")
            return ExecutionStatus.COMPLETED, None

        strategy = definition.settings.error_handling.strategy
        max_visits = definition.settings.max_step_visits
        visits: Counter = Counter()

        while step is not None:
            if execution.cancel_requested:
                return ExecutionStatus.CANCELLED, "Execution cancelled"

            visits[step.id] += 1
            if visits[step.id] > max_visits:
                return ExecutionStatus.FAILED, f"Step {step.id} exceeded {max_visits} visits"

            step_exec = await self._step_executor.execute_step(step, execution, definition.settings)

            if step_exec.status in FAILED_STEP_STATUSES:
                if strategy == ErrorStrategy.CONTINUE:
                    execution.add_log(LogLevel.WARN, f"Continuing after failed step {step.id}", step_id=step.id)
                    step = definition.next_step_after(step.id)
                    continue
                if step.on_failure:
                    execution.add_log(LogLevel.INFO, f"Following on_failure to {step.on_failure}", step_id=step.id)
                    step = definition.get_step(step.on_failure)
                    continue
                if strategy == ErrorStrategy.ROLLBACK:
                    execution.add_log(
                        LogLevel.WARN,
                        "Rollback requested but compensation is not supported; stopping",
                        step_id=step.id,
                    )
                return ExecutionStatus.FAILED, step_exec.error

            if step_exec.status == StepStatus.COMPLETED and step.on_success:
                step = definition.get_step(step.on_success)
            else:
                step = definition.next_step_after(step.id)

        return ExecutionStatus.COMPLETED, None

    # ─── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _abandon_in_flight(
        execution: Execution, status: StepStatus = StepStatus.TIMED_OUT, reason: str = "execution timeout"
    ) -> None:
        for step_exec in execution.steps:
            if step_exec.status in (StepStatus.PENDING, StepStatus.RUNNING):
                step_exec.finish(status, error=reason)
                step_exec.log(f"abandoned: {reason}")

    async def _persist(self, execution: Execution) -> None:
        if self._persistence is None:
            return
        try:
            await self._persistence.update_execution(execution)
        except Exception as e:
            logger.error("Failed to persist execution", execution_id=execution.id, error=str(e))

    async def _emit(self, execution: Execution) -> None:
        event = RUN_EVENT_BY_STATUS[execution.status]
        for listener in self._listeners:
            try:
                result = listener(event, execution)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Run listener failed",
                    run_event=event.value,
                    execution_id=execution.id,
                    error=str(e),
                )
