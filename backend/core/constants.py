"""Constants and enums for the workflow automation engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow definition lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMED_OUT,
})


class StepStatus(str, Enum):
    """Status of a single step execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class StepType(str, Enum):
    """Closed set of step types. Exactly one handler exists per member."""

    CREATE_RECORD = "create_record"
    SEND_NOTIFICATION = "send_notification"
    CALL_EXTERNAL_API = "call_external_api"
    EVALUATE_CONDITION = "evaluate_condition"
    WAIT = "wait"
    RUN_SCRIPT = "run_script"
    REQUIRE_APPROVAL = "require_approval"
    INVOKE_INTEGRATION = "invoke_integration"
    CUSTOM = "custom"


class TriggerType(str, Enum):
    """How an execution gets started."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"
    WEBHOOK = "webhook"
    API = "api"


class ConditionOperator(str, Enum):
    """Comparison operators for conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER = "greater"
    LESS = "less"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class ConditionSource(str, Enum):
    """Where a condition reads its field from."""

    CONTEXT = "context"
    TRIGGER = "trigger"
    PREVIOUS_STEP = "previous_step"


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


class BackoffStrategy(str, Enum):
    """Delay strategy between retry attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ErrorStrategy(str, Enum):
    """What a run does when a step fails terminally."""

    STOP = "stop"
    CONTINUE = "continue"
    ROLLBACK = "rollback"


class OverflowPolicy(str, Enum):
    """What happens to a firing the concurrency gate refuses."""

    REJECT = "reject"
    QUEUE = "queue"


class LogLevel(str, Enum):
    """Log level for execution log entries."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


LOG_LEVEL_ORDER = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"


class VariableScope(str, Enum):
    GLOBAL = "global"
    EXECUTION = "execution"
    STEP = "step"


class RunEvent(str, Enum):
    """Events emitted to collaborators when a run reaches a terminal status."""

    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_TIMED_OUT = "run_timed_out"
    RUN_CANCELLED = "run_cancelled"


RUN_EVENT_BY_STATUS = {
    ExecutionStatus.COMPLETED: RunEvent.RUN_COMPLETED,
    ExecutionStatus.FAILED: RunEvent.RUN_FAILED,
    ExecutionStatus.TIMED_OUT: RunEvent.RUN_TIMED_OUT,
    ExecutionStatus.CANCELLED: RunEvent.RUN_CANCELLED,
}
