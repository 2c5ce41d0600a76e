"""Workflow definition model.

Definitions arrive as structured data (dicts) and are parsed into pydantic
models. Structural checks that need the whole definition (unique step ids,
dangling branch references, trigger/handler fit) live in
``collect_problems`` so they can be reported together.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from core.constants import (
    BackoffStrategy,
    ConditionOperator,
    ConditionSource,
    ErrorStrategy,
    LogLevel,
    LogicalOperator,
    OverflowPolicy,
    StepType,
    TriggerType,
    VariableScope,
    VariableType,
    WorkflowStatus,
)
from core.exceptions import WorkflowValidationError

STRUCTURAL_FIELDS = frozenset({"steps", "trigger", "variables", "conditions", "logical_operator"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Building blocks ───────────────────────────────────────────


class Condition(BaseModel):
    """A single predicate over the context, trigger payload or a previous step."""

    field: str = Field(min_length=1, description="Variable name, payload key or 'stepId.field'")
    operator: ConditionOperator = Field(description="Comparison operator")
    value: Any = Field(default=None, description="Right-hand operand")
    source: ConditionSource = Field(default=ConditionSource.CONTEXT, description="Where the field is read from")


class RetryPolicy(BaseModel):
    """Retry budget and backoff for a step.

    ``max_attempts`` counts every attempt including the first one.
    """

    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_multiplier: float = Field(default=1.0, ge=0)
    max_backoff_time: float = Field(default=60.0, ge=0, description="Backoff ceiling in seconds")

    @property
    def attempt_budget(self) -> int:
        return self.max_attempts if self.enabled else 1


class Schedule(BaseModel):
    """Structured schedule: a fixed interval or calendar fields.

    Empty calendar fields mean "every". ``days_of_week`` uses 0 for Monday.
    """

    interval_seconds: Optional[int] = Field(default=None, ge=1)
    minutes: list[int] = Field(default_factory=list)
    hours: list[int] = Field(default_factory=list)
    days_of_week: list[int] = Field(default_factory=list)
    days_of_month: list[int] = Field(default_factory=list)
    timezone: str = "UTC"

    @field_validator("minutes")
    @classmethod
    def _check_minutes(cls, v: list[int]) -> list[int]:
        return _check_range(v, 0, 59, "minutes")

    @field_validator("hours")
    @classmethod
    def _check_hours(cls, v: list[int]) -> list[int]:
        return _check_range(v, 0, 23, "hours")

    @field_validator("days_of_week")
    @classmethod
    def _check_days_of_week(cls, v: list[int]) -> list[int]:
        return _check_range(v, 0, 6, "days_of_week")

    @field_validator("days_of_month")
    @classmethod
    def _check_days_of_month(cls, v: list[int]) -> list[int]:
        return _check_range(v, 1, 31, "days_of_month")

    @property
    def is_interval(self) -> bool:
        return self.interval_seconds is not None


def _check_range(values: list[int], low: int, high: int, name: str) -> list[int]:
    for value in values:
        if value < low or value > high:
            raise ValueError(f"{name} values must be between {low} and {high}, got {value}")
    return sorted(set(values))


class TriggerConfig(BaseModel):
    """How a workflow gets started."""

    type: TriggerType = TriggerType.MANUAL
    enabled: bool = True
    schedule: Optional[Schedule] = None
    event_name: Optional[str] = None
    webhook_path: Optional[str] = None
    webhook_secret: Optional[str] = None
    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: LogicalOperator = LogicalOperator.AND


class Variable(BaseModel):
    name: str = Field(min_length=1)
    type: VariableType = VariableType.STRING
    default_value: Any = None
    description: str = ""
    required: bool = False
    scope: VariableScope = VariableScope.EXECUTION


class StepDefinition(BaseModel):
    """One typed unit of work inside a workflow."""

    id: str = Field(min_length=1, description="Unique step id within the workflow")
    name: str = Field(default="", description="Human-readable step name")
    type: StepType = Field(description="Step type, resolved through the handler registry")
    order: int = Field(default=0, description="Execution order hint")
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict, description="Handler-specific configuration")
    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: LogicalOperator = LogicalOperator.AND
    on_success: Optional[str] = Field(default=None, description="Step id to run after success")
    on_failure: Optional[str] = Field(default=None, description="Step id to run after failure")
    timeout: float = Field(default=300, gt=0, description="Per-attempt timeout in seconds")
    retry_policy: Optional[RetryPolicy] = Field(default=None, description="Overrides the workflow default")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("on_success", "on_failure")
    @classmethod
    def _empty_is_terminal(cls, v: Optional[str]) -> Optional[str]:
        return v or None


# ─── Settings ──────────────────────────────────────────────────


class ErrorHandling(BaseModel):
    strategy: ErrorStrategy = ErrorStrategy.STOP
    notify_on_error: bool = True


class LoggingSettings(BaseModel):
    level: LogLevel = LogLevel.INFO
    include_step_details: bool = True
    include_variables: bool = False


class NotificationSettings(BaseModel):
    on_start: bool = False
    on_success: bool = True
    on_failure: bool = True
    recipients: list[str] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=lambda: ["in_app"])


class WorkflowSettings(BaseModel):
    max_concurrent_executions: int = Field(default=1, ge=1)
    execution_timeout: float = Field(default=300, gt=0, description="Run timeout in seconds")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    overflow: OverflowPolicy = OverflowPolicy.REJECT
    max_step_visits: int = Field(default=100, ge=1)


# ─── Definition ────────────────────────────────────────────────


class WorkflowDefinition(BaseModel):
    """A versioned workflow: trigger, ordered steps, variables and settings."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(min_length=1, description="Workflow name")
    description: str = ""
    version: int = Field(default=1, ge=1)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    steps: list[StepDefinition] = Field(default_factory=list)
    variables: list[Variable] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list, description="Gate evaluated before the first step")
    logical_operator: LogicalOperator = LogicalOperator.AND
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_executed_at: Optional[datetime] = None
    execution_count: int = 0

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ordered_steps(self) -> list[StepDefinition]:
        """Steps sorted by order hint, ties broken by declaration position."""
        indexed = list(enumerate(self.steps))
        indexed.sort(key=lambda pair: (pair[1].order, pair[0]))
        return [step for _, step in indexed]

    def first_step(self) -> Optional[StepDefinition]:
        for step in self.ordered_steps():
            if step.enabled:
                return step
        return None

    def next_step_after(self, step_id: str) -> Optional[StepDefinition]:
        """Next enabled step in declared order after ``step_id``."""
        ordered = self.ordered_steps()
        for idx, step in enumerate(ordered):
            if step.id == step_id:
                for candidate in ordered[idx + 1:]:
                    if candidate.enabled:
                        return candidate
                return None
        return None

    def initial_variables(self) -> dict[str, Any]:
        return {var.name: var.default_value for var in self.variables}


class WorkflowUpdate(BaseModel):
    """Partial update to a workflow definition."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    trigger: Optional[TriggerConfig] = None
    steps: Optional[list[StepDefinition]] = None
    variables: Optional[list[Variable]] = None
    conditions: Optional[list[Condition]] = None
    logical_operator: Optional[LogicalOperator] = None
    settings: Optional[WorkflowSettings] = None
    metadata: Optional[dict[str, Any]] = None


# ─── Validation ────────────────────────────────────────────────


def collect_problems(definition: WorkflowDefinition, handlers=None, for_activation: bool = False) -> list[str]:
    """Return every structural problem in ``definition``.

    Args:
        definition: Workflow to check
        handlers: Optional step handler registry used to check step types and configs
        for_activation: Also apply the checks that only matter for a runnable workflow
    """
    problems: list[str] = []

    seen: set[str] = set()
    for step in definition.steps:
        if step.id in seen:
            problems.append(f"Duplicate step id: {step.id}")
        seen.add(step.id)

    for step in definition.steps:
        if step.on_success and step.on_success not in seen:
            problems.append(f"Invalid on_success reference in step {step.id}: {step.on_success}")
        if step.on_failure and step.on_failure not in seen:
            problems.append(f"Invalid on_failure reference in step {step.id}: {step.on_failure}")

    names = [var.name for var in definition.variables]
    if len(names) != len(set(names)):
        problems.append("Variable names must be unique")

    if handlers is not None:
        for step in definition.steps:
            if not handlers.has(step.type):
                problems.append(f"Unknown step type: {step.type.value}")
                continue
            if not handlers.resolve(step.type).validate_config(step.config):
                problems.append(f"Invalid configuration for step: {step.name or step.id}")

    if for_activation:
        if not any(step.enabled for step in definition.steps):
            problems.append("Workflow has no enabled steps")
        problems.extend(_trigger_problems(definition.trigger))

    return problems


def _trigger_problems(trigger: TriggerConfig) -> list[str]:
    problems: list[str] = []
    if trigger.type == TriggerType.SCHEDULE:
        if trigger.schedule is None:
            problems.append("Schedule trigger requires a schedule")
        else:
            try:
                ZoneInfo(trigger.schedule.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                problems.append(f"Unknown timezone: {trigger.schedule.timezone}")
    elif trigger.type == TriggerType.EVENT and not trigger.event_name:
        problems.append("Event trigger requires an event_name")
    elif trigger.type == TriggerType.WEBHOOK and not trigger.webhook_path:
        problems.append("Webhook trigger requires a webhook_path")
    return problems


def validate_definition(definition: WorkflowDefinition, handlers=None, for_activation: bool = False) -> None:
    """Raise WorkflowValidationError listing every problem, if any."""
    problems = collect_problems(definition, handlers, for_activation)
    if problems:
        raise WorkflowValidationError(problems=problems)
