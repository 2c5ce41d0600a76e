"""Tests for the workflow execution engine."""

import pytest

from conftest import custom_step
from core import metrics
from core.constants import ExecutionStatus, LogLevel, RunEvent, StepStatus
from workflow.engine import WorkflowEngine


def visited(execution) -> list[str]:
    return [s.step_id for s in execution.steps]


@pytest.mark.unit
class TestStepRouting:
    async def test_runs_steps_in_declared_order(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a"), custom_step("b"), custom_step("c")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.COMPLETED
        assert visited(execution) == ["a", "b", "c"]

    async def test_order_field_wins_over_declaration(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("late", order=2), custom_step("early", order=1)])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["early", "late"]

    async def test_on_success_jumps(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a", on_success="c"), custom_step("b"), custom_step("c")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a", "c"]

    async def test_on_failure_branch(self, engine, make_workflow, make_execution):
        definition = make_workflow([
            custom_step("a", "fail", on_failure="c"),
            custom_step("b"),
            custom_step("c"),
        ])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a", "c"]
        assert execution.status == ExecutionStatus.COMPLETED

    async def test_on_failure_branch_status_follows_target(self, engine, make_workflow, make_execution):
        definition = make_workflow([
            custom_step("a", "fail", on_failure="c"),
            custom_step("b"),
            custom_step("c", "fail", params={"message": "cleanup failed"}),
        ])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a", "c"]
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "cleanup failed"

    async def test_failure_without_branch_stops(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a", "fail"), custom_step("b")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a"]
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "boom"

    async def test_skipped_step_moves_on(self, engine, make_workflow, make_execution):
        definition = make_workflow([
            custom_step("a", conditions=[{"field": "go", "operator": "equals", "value": True}]),
            custom_step("b"),
        ])
        execution = make_execution(definition, variables={"go": False})

        await engine.execute(definition, execution)

        assert [s.status for s in execution.steps] == [StepStatus.SKIPPED, StepStatus.COMPLETED]
        assert execution.status == ExecutionStatus.COMPLETED

    async def test_step_output_visible_to_later_conditions(self, engine, make_workflow, make_execution):
        definition = make_workflow([
            custom_step("a", params={"x": 1}),
            custom_step("b", conditions=[{"field": "a.x", "operator": "equals", "value": 1, "source": "previous_step"}]),
            custom_step("c", conditions=[{"field": "a.x", "operator": "equals", "value": 2, "source": "previous_step"}]),
        ])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.context.step_results["a"]["x"] == 1
        assert [s.status for s in execution.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.SKIPPED]

    async def test_workflow_conditions_gate_the_run(self, engine, make_workflow, make_execution):
        definition = make_workflow(
            [custom_step("a")],
            conditions=[{"field": "priority", "operator": "equals", "value": "high", "source": "trigger"}],
        )
        execution = make_execution(definition, payload={"priority": "low"})

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.steps == []

    async def test_revisits_bounded(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a", "fail", on_failure="a")], settings={"max_step_visits": 3})
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a", "a", "a"]
        assert execution.status == ExecutionStatus.FAILED
        assert "exceeded 3 visits" in execution.error


@pytest.mark.unit
class TestErrorStrategies:
    async def test_continue_runs_next_step(self, engine, make_workflow, make_execution):
        definition = make_workflow(
            [custom_step("a", "fail", on_failure="c"), custom_step("b"), custom_step("c")],
            settings={"error_handling": {"strategy": "continue"}},
        )
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a", "b", "c"]
        assert execution.status == ExecutionStatus.COMPLETED

    async def test_rollback_stops_and_logs(self, engine, make_workflow, make_execution):
        definition = make_workflow(
            [custom_step("a", "fail"), custom_step("b")],
            settings={"error_handling": {"strategy": "rollback"}},
        )
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["a"]
        assert execution.status == ExecutionStatus.FAILED
        assert any("compensation is not supported" in e.message for e in execution.logs)


@pytest.mark.unit
class TestRetriesAndTimeouts:
    async def test_exhausted_retries_fail_the_run(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a", "fail", retry_policy={"max_attempts": 2}), custom_step("b")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        step = execution.steps[0]
        assert step.status == StepStatus.FAILED
        assert step.retry_count == 1
        assert len([e for e in execution.logs if e.message.startswith("Attempt")]) == 2
        assert execution.status == ExecutionStatus.FAILED

    async def test_step_timeout_stops_the_run(self, engine, make_workflow, make_execution):
        definition = make_workflow([
            custom_step("slow", "sleep", params={"seconds": 5}, timeout=0.05),
            custom_step("after"),
        ])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert visited(execution) == ["slow"]
        assert execution.steps[0].status == StepStatus.TIMED_OUT
        assert execution.status == ExecutionStatus.FAILED

    async def test_execution_timeout(self, engine, make_workflow, make_execution):
        definition = make_workflow(
            [custom_step("slow", "sleep", params={"seconds": 5}), custom_step("after")],
            settings={"execution_timeout": 0.05},
        )
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.TIMED_OUT
        assert visited(execution) == ["slow"]
        assert execution.steps[0].status == StepStatus.TIMED_OUT
        assert not engine.is_running(execution.id)


@pytest.mark.unit
class TestCancellation:
    async def test_cancel_before_start(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a")])
        execution = make_execution(definition)
        execution.cancel_requested = True

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.steps == []

    async def test_cancel_between_steps(self, engine, actions, make_workflow, make_execution):
        @actions.action("cancel_self")
        def cancel_self(params, context):
            assert engine.cancel_execution(context.execution_id)
            return {}

        definition = make_workflow([custom_step("a", "cancel_self"), custom_step("b")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.CANCELLED
        assert visited(execution) == ["a"]

    async def test_cancel_unknown_execution(self, engine):
        assert engine.cancel_execution("nope") is False


@pytest.mark.unit
class TestFinalization:
    async def test_listener_called_once_with_event(self, step_executor, make_workflow, make_execution):
        events = []
        engine = WorkflowEngine(step_executor, listeners=[lambda event, ex: events.append((event, ex.status))])
        definition = make_workflow([custom_step("a", "fail")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert events == [(RunEvent.RUN_FAILED, ExecutionStatus.FAILED)]

    async def test_async_listener_and_failing_listener(self, step_executor, make_workflow, make_execution):
        seen = []

        async def good(event, execution):
            seen.append(event)

        def bad(event, execution):
            raise RuntimeError("listener down")

        engine = WorkflowEngine(step_executor, listeners=[bad, good])
        definition = make_workflow([custom_step("a")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.COMPLETED
        assert seen == [RunEvent.RUN_COMPLETED]

    async def test_persisted_snapshot(self, engine, persistence, make_workflow, make_execution):
        definition = make_workflow([custom_step("a")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        snapshot = persistence.get_execution(execution.id)
        assert snapshot["status"] == "completed"
        assert snapshot["steps"][0]["step_id"] == "a"

    async def test_persistence_failure_does_not_abort(self, step_executor, make_workflow, make_execution):
        class BrokenStore:
            async def update_execution(self, execution):
                raise ConnectionError("db down")

        engine = WorkflowEngine(step_executor, persistence=BrokenStore())
        definition = make_workflow([custom_step("a")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.status == ExecutionStatus.COMPLETED

    async def test_metrics_updated(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a")])

        await engine.execute(definition, make_execution(definition))

        assert metrics.get_counter(metrics.EXECUTIONS_TOTAL, {"status": "completed"}) == 1
        assert metrics.get_gauge(metrics.EXECUTIONS_RUNNING) == 0
        assert 'workflow_executions_total{status="completed"} 1.0' in metrics.generate_metrics()

    async def test_terminal_execution_is_not_rerun(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a")])
        execution = make_execution(definition)
        await engine.execute(definition, execution)

        await engine.execute(definition, execution)

        assert len(execution.steps) == 1

    async def test_log_level_filters_entries(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a")], settings={"logging": {"level": "error"}})
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        assert execution.logs == []

    async def test_start_and_end_logged(self, engine, make_workflow, make_execution):
        definition = make_workflow([custom_step("a")])
        execution = make_execution(definition)

        await engine.execute(definition, execution)

        messages = [e.message for e in execution.logs if e.level == LogLevel.INFO]
        assert messages[0].startswith("Execution started")
        assert messages[-1] == "Execution completed"
        assert execution.start_time <= execution.end_time
