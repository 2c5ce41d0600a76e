"""Tests for the dispatcher queue and polling loop."""

import asyncio

import pytest

from conftest import custom_step
from core.constants import ExecutionStatus, StepStatus
from workflow.dispatcher import Dispatcher, RunRequest
from workflow.registry import WorkflowRegistry


@pytest.fixture
def gate():
    return WorkflowRegistry()


@pytest.fixture
def dispatcher(engine, gate):
    return Dispatcher(engine, gate, poll_interval=0.01, max_parallel_runs=2)


@pytest.fixture
def admitted(gate, make_workflow, make_execution):
    """Build an admitted RunRequest for a registered workflow."""

    def _make(steps=None, limit=10, **fields):
        definition = make_workflow(
            steps or [custom_step("a")],
            settings={"max_concurrent_executions": limit},
            **fields,
        )
        if gate.get(definition.id) is None:
            gate.put(definition)
        assert gate.admit(definition.id)
        return RunRequest(make_execution(definition), definition)

    return _make


async def wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.unit
class TestDrain:
    async def test_drain_once_runs_queued(self, dispatcher, admitted, gate):
        request = admitted()
        dispatcher.enqueue(request)
        assert dispatcher.pending_count == 1

        started = await dispatcher.drain_once()

        assert started == 1
        assert request.execution.status == ExecutionStatus.COMPLETED
        assert dispatcher.pending_count == 0
        assert dispatcher.in_flight_count == 0
        assert gate.running_count(request.definition.id) == 0

    async def test_parallel_budget(self, dispatcher, admitted):
        for _ in range(3):
            dispatcher.enqueue(admitted())

        assert await dispatcher.drain_once() == 2
        assert dispatcher.pending_count == 1
        assert await dispatcher.drain_once() == 1

    async def test_fifo_order(self, engine, gate, admitted):
        dispatcher = Dispatcher(engine, gate, max_parallel_runs=1)
        first, second = admitted(), admitted()
        dispatcher.enqueue(first)
        dispatcher.enqueue(second)

        await dispatcher.drain_once()

        assert first.execution.is_terminal
        assert second.execution.status == ExecutionStatus.PENDING

    async def test_release_requeues_deferred(self, dispatcher, admitted, gate, make_execution):
        request = admitted(limit=1)
        definition = request.definition
        waiting = RunRequest(make_execution(definition), definition)
        assert not gate.admit(definition.id)
        gate.defer(definition.id, waiting)
        dispatcher.enqueue(request)

        await dispatcher.drain_once()

        assert dispatcher.pending_count == 1
        await dispatcher.drain_once()
        assert waiting.execution.status == ExecutionStatus.COMPLETED
        assert gate.running_count(definition.id) == 0

    async def test_engine_crash_is_finalized(self, dispatcher, admitted, engine, monkeypatch):
        request = admitted()

        async def explode(definition, execution):
            raise RuntimeError("engine bug")

        monkeypatch.setattr(engine, "execute", explode)
        dispatcher.enqueue(request)

        await dispatcher.drain_once()

        assert request.execution.status == ExecutionStatus.FAILED
        assert "engine bug" in request.execution.error


@pytest.mark.unit
class TestCancelQueued:
    async def test_cancel_queued_finalizes_and_releases(self, dispatcher, admitted, gate):
        request = admitted(limit=1)
        dispatcher.enqueue(request)

        assert await dispatcher.cancel_queued(request.execution.id)

        assert request.execution.status == ExecutionStatus.CANCELLED
        assert dispatcher.pending_count == 0
        assert gate.running_count(request.definition.id) == 0

    async def test_cancel_unknown(self, dispatcher):
        assert not await dispatcher.cancel_queued("missing")


@pytest.mark.unit
class TestLoop:
    async def test_loop_picks_up_enqueued_runs(self, dispatcher, admitted):
        await dispatcher.start()
        try:
            request = admitted()
            dispatcher.enqueue(request)
            await wait_until(lambda: request.execution.is_terminal)
        finally:
            await dispatcher.stop()

        assert request.execution.status == ExecutionStatus.COMPLETED

    async def test_start_is_idempotent(self, dispatcher):
        await dispatcher.start()
        await dispatcher.start()
        await dispatcher.stop()

    async def test_stop_cancel_running(self, dispatcher, admitted):
        request = admitted([custom_step("slow", "sleep", params={"seconds": 30})])
        await dispatcher.start()
        dispatcher.enqueue(request)
        await wait_until(lambda: request.execution.status == ExecutionStatus.RUNNING)

        await dispatcher.stop(cancel_running=True)

        assert request.execution.status == ExecutionStatus.CANCELLED
        step = request.execution.steps[0]
        assert step.status == StepStatus.FAILED
        assert step.error == "cancelled"
        assert dispatcher.in_flight_count == 0

    async def test_stop_waits_for_in_flight(self, dispatcher, admitted):
        request = admitted([custom_step("nap", "sleep", params={"seconds": 0.05})])
        await dispatcher.start()
        dispatcher.enqueue(request)
        await wait_until(lambda: request.execution.status == ExecutionStatus.RUNNING)

        await dispatcher.stop()

        assert request.execution.status == ExecutionStatus.COMPLETED
