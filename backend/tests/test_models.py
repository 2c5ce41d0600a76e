"""Tests for workflow definition models, structural validation and execution records."""

import pytest
from pydantic import ValidationError

from conftest import custom_step
from core.constants import ExecutionStatus, LogLevel, TriggerType
from core.exceptions import InvalidStateError, WorkflowValidationError
from workflow.context import ExecutionContext
from workflow.execution import Execution, StepExecution
from workflow.models import (
    RetryPolicy,
    StepDefinition,
    TriggerConfig,
    WorkflowDefinition,
    collect_problems,
    validate_definition,
)


def _workflow(steps, **fields) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({"name": "Model test", "steps": steps, **fields})


# ─── Definition structure ───


@pytest.mark.unit
class TestWorkflowDefinition:
    def test_defaults(self):
        definition = WorkflowDefinition(name="Defaults")
        assert definition.version == 1
        assert definition.status.value == "draft"
        assert definition.trigger.type == TriggerType.MANUAL
        assert definition.settings.max_concurrent_executions == 1
        assert definition.settings.error_handling.strategy.value == "stop"

    def test_name_required(self):
        with pytest.raises(ValidationError):
            WorkflowDefinition(name="")

    def test_unknown_step_type_rejected(self):
        with pytest.raises(ValidationError):
            StepDefinition(id="s1", type="teleport")

    def test_step_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            StepDefinition(id="s1", type="wait", timeout=0)

    def test_empty_branch_means_terminal(self):
        step = StepDefinition(id="s1", type="custom", on_success="", on_failure="")
        assert step.on_success is None
        assert step.on_failure is None

    def test_ordered_steps_use_order_then_position(self):
        definition = _workflow([
            custom_step("c", order=2),
            custom_step("a", order=1),
            custom_step("b", order=1),
        ])
        assert [s.id for s in definition.ordered_steps()] == ["a", "b", "c"]

    def test_first_and_next_skip_disabled(self):
        definition = _workflow([
            custom_step("a", enabled=False),
            custom_step("b"),
            custom_step("c", enabled=False),
            custom_step("d"),
        ])
        assert definition.first_step().id == "b"
        assert definition.next_step_after("b").id == "d"
        assert definition.next_step_after("d") is None
        assert definition.next_step_after("ghost") is None

    def test_initial_variables(self):
        definition = _workflow([], variables=[{"name": "region", "default_value": "eu"}, {"name": "limit"}])
        assert definition.initial_variables() == {"region": "eu", "limit": None}

    def test_retry_budget(self):
        assert RetryPolicy().attempt_budget == 3
        assert RetryPolicy(enabled=False, max_attempts=9).attempt_budget == 1


# ─── Structural validation ───


@pytest.mark.unit
class TestCollectProblems:
    def test_valid_definition(self, handlers):
        definition = _workflow([custom_step("a", on_failure="b"), custom_step("b")])
        assert collect_problems(definition, handlers, for_activation=True) == []

    def test_duplicate_step_ids(self):
        problems = collect_problems(_workflow([custom_step("a"), custom_step("a")]))
        assert "Duplicate step id: a" in problems

    def test_dangling_references(self):
        problems = collect_problems(_workflow([custom_step("a", on_success="x", on_failure="y")]))
        assert "Invalid on_success reference in step a: x" in problems
        assert "Invalid on_failure reference in step a: y" in problems

    def test_duplicate_variable_names(self):
        problems = collect_problems(_workflow([], variables=[{"name": "v"}, {"name": "v"}]))
        assert "Variable names must be unique" in problems

    def test_invalid_step_config(self, handlers):
        definition = _workflow([
            {"id": "w", "type": "wait", "config": {"duration": "later"}},
            custom_step("c", "not_registered"),
        ])
        problems = collect_problems(definition, handlers)
        assert "Invalid configuration for step: w" in problems
        assert "Invalid configuration for step: c" in problems

    def test_activation_checks(self):
        definition = _workflow([custom_step("a", enabled=False)], trigger={"type": "event"})
        assert collect_problems(definition) == []

        problems = collect_problems(definition, for_activation=True)
        assert "Workflow has no enabled steps" in problems
        assert "Event trigger requires an event_name" in problems

    @pytest.mark.parametrize(
        "trigger,expected",
        [
            ({"type": "schedule"}, "Schedule trigger requires a schedule"),
            ({"type": "schedule", "schedule": {"timezone": "Nowhere/City"}}, "Unknown timezone: Nowhere/City"),
            ({"type": "webhook"}, "Webhook trigger requires a webhook_path"),
        ],
    )
    def test_trigger_problems(self, trigger, expected):
        definition = _workflow([custom_step("a")], trigger=trigger)
        assert expected in collect_problems(definition, for_activation=True)

    def test_validate_definition_lists_every_problem(self):
        definition = _workflow([custom_step("a", on_success="x"), custom_step("a")])
        with pytest.raises(WorkflowValidationError) as exc_info:
            validate_definition(definition)
        assert len(exc_info.value.problems) == 2
        assert exc_info.value.status_code == 422


# ─── Execution records ───


def _execution() -> Execution:
    return Execution(workflow_id="wf-1", workflow_version=3, context=ExecutionContext.create("wf-1", "ex-1"))


@pytest.mark.unit
class TestExecution:
    def test_lifecycle(self):
        execution = _execution()
        execution.mark_running()
        execution.finish(ExecutionStatus.COMPLETED)

        assert execution.is_terminal
        assert execution.duration_ms >= 0

    def test_terminal_status_is_final(self):
        execution = _execution()
        execution.finish(ExecutionStatus.CANCELLED, "stop")

        with pytest.raises(InvalidStateError):
            execution.finish(ExecutionStatus.COMPLETED)
        with pytest.raises(InvalidStateError):
            execution.append_step(StepExecution(step_id="a", step_type="custom"))
        with pytest.raises(InvalidStateError):
            execution.mark_running()
        assert execution.start_time == execution.end_time

    def test_finish_requires_terminal_status(self):
        with pytest.raises(InvalidStateError):
            _execution().finish(ExecutionStatus.RUNNING)

    def test_log_level_threshold(self):
        execution = _execution()
        execution.log_level = LogLevel.WARN

        assert execution.add_log(LogLevel.INFO, "quiet") is None
        assert execution.add_log(LogLevel.ERROR, "loud").message == "loud"
        assert [e.message for e in execution.logs] == ["loud"]

    def test_to_dict(self):
        execution = _execution()
        execution.append_step(StepExecution(step_id="a", step_type="custom"))
        data = execution.to_dict()

        assert data["workflow_version"] == 3
        assert data["status"] == "pending"
        assert data["trigger_type"] == "manual"
        assert data["steps"][0]["step_id"] == "a"
        assert data["context"]["execution_id"] == "ex-1"

    def test_context_restores_from_dict(self):
        context = ExecutionContext.create("wf-1", "ex-1", {"a": 1}, {"b": 2})
        context.record_step_output("s1", {"ok": True})
        restored = ExecutionContext.from_dict(context.to_dict())
        assert restored.step_results == {"s1": {"ok": True}}
        assert restored.trigger_payload == {"b": 2}

    def test_context_copies_trigger_payload(self):
        payload = {"order": {"id": 1}}
        context = ExecutionContext.create("wf-1", "ex-1", trigger_payload=payload)
        payload["order"]["id"] = 2
        assert context.trigger_payload["order"]["id"] == 1


@pytest.mark.unit
class TestTriggerConfig:
    def test_conditions_parsed(self):
        trigger = TriggerConfig(conditions=[{"field": "priority", "operator": "equals", "value": "high"}])
        assert trigger.conditions[0].operator.value == "equals"

    def test_schedule_ranges(self):
        with pytest.raises(ValidationError):
            TriggerConfig(type="schedule", schedule={"minutes": [60]})
        with pytest.raises(ValidationError):
            TriggerConfig(type="schedule", schedule={"days_of_week": [7]})
