"""Dispatcher: the run queue and the polling loop that drains it.

Pending executions are queued in FIFO order. Each tick pops as many as the
``max_parallel_runs`` budget allows and drives each one to completion on
the engine. The concurrency gate slot of a run is released on every
terminal outcome, including crashes and runs cancelled while still queued;
a deferred request admitted into the freed slot is queued right away.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from core.constants import ExecutionStatus
from core.logging_config import execution_log_context
from workflow.engine import WorkflowEngine
from workflow.execution import Execution
from workflow.models import WorkflowDefinition
from workflow.registry import WorkflowRegistry

logger = logging.getLogger(__name__)


@dataclass
class RunRequest:
    """An admitted execution together with the definition version it runs."""

    execution: Execution
    definition: WorkflowDefinition


class Dispatcher:
    """Single run queue drained by a polling loop."""

    def __init__(
        self,
        engine: WorkflowEngine,
        gate: WorkflowRegistry,
        poll_interval: float = 1.0,
        max_parallel_runs: int = 1,
    ):
        self._engine = engine
        self._gate = gate
        self.poll_interval = poll_interval
        self.max_parallel_runs = max(1, max_parallel_runs)
        self._queue: deque[RunRequest] = deque()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    # ─── Queue ─────────────────────────────────────────────────

    def enqueue(self, request: RunRequest) -> None:
        self._queue.append(request)
        self._wakeup.set()
        logger.debug(f"Execution {request.execution.id} queued ({len(self._queue)} pending)")

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def discard(self, execution_id: str) -> Optional[RunRequest]:
        """Remove a queued request that has not started yet."""
        for request in self._queue:
            if request.execution.id == execution_id:
                self._queue.remove(request)
                return request
        return None

    async def cancel_queued(self, execution_id: str) -> bool:
        """Cancel a queued execution: finalize it and free its gate slot."""
        request = self.discard(execution_id)
        if request is None:
            return False
        try:
            await self._engine.finalize(request.execution, ExecutionStatus.CANCELLED, "Execution cancelled while queued")
        finally:
            self._release(request.execution.workflow_id)
        return True

    # ─── Loop ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._poll_loop(), name="workflow-dispatcher")
        logger.info(
            f"Dispatcher started (poll_interval={self.poll_interval}s, max_parallel_runs={self.max_parallel_runs})"
        )

    async def stop(self, cancel_running: bool = False, timeout: Optional[float] = None) -> None:
        """Stop the polling loop and wait for in-flight runs.

        Args:
            cancel_running: Cancel in-flight runs instead of letting them finish
            timeout: Give up waiting after this many seconds and cancel what is left
        """
        self._running = False
        self._wakeup.set()
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._in_flight.values())
        if tasks:
            if cancel_running:
                for task in tasks:
                    task.cancel()
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)
        logger.info("Dispatcher stopped")

    async def drain_once(self, wait: bool = True) -> int:
        """Run one tick: start queued runs up to the parallel budget.

        Args:
            wait: Wait for the runs started by this tick to finish

        Returns:
            Number of runs started
        """
        started = self._tick()
        if wait and started:
            await asyncio.gather(*started, return_exceptions=True)
        return len(started)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                self._tick()
            except Exception as e:
                logger.error(f"Dispatcher tick failed: {e}", exc_info=True)
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _tick(self) -> list[asyncio.Task]:
        started: list[asyncio.Task] = []
        while self._queue and len(self._in_flight) < self.max_parallel_runs:
            request = self._queue.popleft()
            task = asyncio.create_task(self._drive(request), name=f"run-{request.execution.id}")
            self._in_flight[request.execution.id] = task
            started.append(task)
        return started

    async def _drive(self, request: RunRequest) -> None:
        execution = request.execution
        try:
            with execution_log_context(execution.workflow_id, execution.id):
                await self._engine.execute(request.definition, execution)
        except asyncio.CancelledError:
            logger.info(f"Execution {execution.id} cancelled by dispatcher shutdown")
            raise
        except Exception as e:
            logger.error(f"Execution {execution.id} crashed outside the engine: {e}", exc_info=True)
            await self._engine.finalize(execution, ExecutionStatus.FAILED, f"Internal error: {e}")
        finally:
            self._in_flight.pop(execution.id, None)
            self._release(execution.workflow_id)
            self._wakeup.set()

    def _release(self, workflow_id: str) -> None:
        deferred = self._gate.release(workflow_id)
        if deferred is not None:
            logger.info(f"Deferred execution {deferred.execution.id} admitted for workflow {workflow_id}")
            self.enqueue(deferred)
