"""Step Executor: runs one step of a run with conditions, retries and timeouts.

States: pending -> running -> completed | failed | skipped | timed_out.
Each attempt runs under ``asyncio.wait_for(step.timeout)``; a timed-out
attempt counts as a failed attempt with error ``"timeout"``. Between
attempts the executor sleeps for the policy's backoff.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from core import metrics
from core.constants import LogLevel, StepStatus
from core.exceptions import HandlerNotFoundError
from steps.base_step import StepOutcome
from steps.registry import StepHandlerRegistry
from workflow import conditions
from workflow.execution import Execution, StepExecution
from workflow.models import StepDefinition, WorkflowSettings
from workflow.retry_strategies import RetryStrategy
from workflow.variables import resolve_config

logger = structlog.get_logger(__name__)

TIMEOUT_ERROR = "timeout"


class StepExecutor:
    """Executes individual workflow steps by delegating to step handlers."""

    def __init__(
        self,
        handlers: StepHandlerRegistry,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._handlers = handlers
        self._sleep = sleep or asyncio.sleep

    async def execute_step(
        self,
        step: StepDefinition,
        execution: Execution,
        settings: WorkflowSettings,
    ) -> StepExecution:
        """Execute a single workflow step and record it on the execution.

        Args:
            step: Step definition
            execution: The run the step belongs to
            settings: Workflow settings (default retry policy, logging)

        Returns:
            The StepExecution in a terminal step status
        """
        context = execution.context
        context.current_step_id = step.id
        log = logger.bind(workflow_id=execution.workflow_id, execution_id=execution.id, step_id=step.id)

        step_exec = StepExecution(step_id=step.id, step_type=step.type.value)
        execution.append_step(step_exec)

        if not step.enabled:
            self._skip(execution, step_exec, "Step disabled")
            return step_exec

        if not conditions.evaluate(step.conditions, context, step.logical_operator):
            self._skip(execution, step_exec, "Step conditions not met")
            log.debug("Step skipped, conditions not met")
            return step_exec

        resolved_config, unresolved = resolve_config(step.config, context)
        for token in unresolved:
            execution.add_log(LogLevel.WARN, f"Unresolved placeholder {{{{{token}}}}}", step_id=step.id)
        step_exec.input = resolved_config

        try:
            handler = self._handlers.resolve(step.type)
        except HandlerNotFoundError as e:
            step_exec.finish(StepStatus.FAILED, error=e.message)
            context.record_step_error(step.id, e.message)
            execution.add_log(LogLevel.ERROR, e.message, step_id=step.id)
            return step_exec

        strategy = RetryStrategy.from_policy(step.retry_policy or settings.retry_policy)
        include_details = settings.logging.include_step_details

        step_exec.start()
        step_exec.log(f"started ({step.type.value})")
        execution.add_log(
            LogLevel.INFO,
            f"Step started: {step.name or step.id}",
            step_id=step.id,
            data={"input": resolved_config} if include_details else None,
        )

        attempt = 0
        timed_out = False
        outcome = StepOutcome.fail("not run")
        while True:
            attempt += 1
            step_exec.retry_count = attempt - 1
            metrics.record_step_attempt(step.type.value)
            try:
                outcome = await asyncio.wait_for(handler.run(resolved_config, context), timeout=step.timeout)
                timed_out = False
            except asyncio.TimeoutError:
                outcome = StepOutcome.fail(TIMEOUT_ERROR)
                timed_out = True

            if outcome.success:
                context.record_step_output(step.id, outcome.output)
                step_exec.finish(StepStatus.COMPLETED, output=outcome.output)
                step_exec.log(f"attempt {attempt} succeeded")
                execution.add_log(
                    LogLevel.INFO,
                    f"Step completed: {step.name or step.id}",
                    step_id=step.id,
                    data={"output": outcome.output, "attempts": attempt} if include_details else None,
                )
                log.info("Step completed", attempts=attempt)
                return step_exec

            error = outcome.error or "Step failed"
            step_exec.log(f"attempt {attempt}/{strategy.max_attempts} failed: {error}")
            execution.add_log(
                LogLevel.WARN,
                f"Attempt {attempt}/{strategy.max_attempts} failed: {error}",
                step_id=step.id,
            )

            if not strategy.should_retry(attempt):
                break

            delay = strategy.compute_delay(attempt - 1)
            step_exec.log(f"retrying in {delay:.3f}s")
            execution.add_log(LogLevel.DEBUG, f"Retrying in {delay:.3f}s", step_id=step.id)
            log.info("Step retry scheduled", attempt=attempt, delay_seconds=delay)
            await self._sleep(delay)

        status = StepStatus.TIMED_OUT if timed_out else StepStatus.FAILED
        step_exec.finish(status, output=outcome.output, error=error)
        context.record_step_error(step.id, error)
        execution.add_log(
            LogLevel.ERROR,
            f"Step {status.value}: {step.name or step.id}: {error}",
            step_id=step.id,
            data={"attempts": attempt},
        )
        log.warning("Step failed", status=status.value, attempts=attempt, error=error)
        return step_exec

    @staticmethod
    def _skip(execution: Execution, step_exec: StepExecution, reason: str) -> None:
        step_exec.finish(StepStatus.SKIPPED)
        step_exec.log(f"skipped: {reason}")
        execution.add_log(LogLevel.INFO, f"Step skipped: {reason}", step_id=step_exec.step_id)
