"""Execution records: runs, step executions and execution log entries."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import (
    LOG_LEVEL_ORDER,
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    LogLevel,
    StepStatus,
    TriggerType,
)
from core.exceptions import InvalidStateError
from workflow.context import ExecutionContext


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _duration_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


@dataclass
class ExecutionLogEntry:
    timestamp: datetime
    level: LogLevel
    message: str
    step_id: Optional[str] = None
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "step_id": self.step_id,
            "data": self.data,
        }


@dataclass
class StepExecution:
    """One visit of one step inside a run."""

    step_id: str
    step_type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    logs: list[str] = field(default_factory=list)

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.start_time, self.end_time)

    def log(self, message: str) -> None:
        self.logs.append(f"{_now().isoformat()} {message}")

    def start(self) -> None:
        self.status = StepStatus.RUNNING
        self.start_time = _now()

    def finish(self, status: StepStatus, output: Any = None, error: Optional[str] = None) -> None:
        self.status = status
        self.output = output
        self.error = error
        self.end_time = _now()
        if self.start_time is None:
            self.start_time = self.end_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_id": self.step_id,
            "step_type": self.step_type,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
            "logs": list(self.logs),
        }


@dataclass
class Execution:
    """A single run of a workflow definition.

    Terminal statuses are final: once reached, no step execution can be
    appended and the status cannot change.
    """

    workflow_id: str
    workflow_version: int
    context: ExecutionContext
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExecutionStatus = ExecutionStatus.PENDING
    triggered_by: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    steps: list[StepExecution] = field(default_factory=list)
    error: Optional[str] = None
    logs: list[ExecutionLogEntry] = field(default_factory=list)
    log_level: LogLevel = LogLevel.INFO
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.start_time, self.end_time)

    def add_log(
        self,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> Optional[ExecutionLogEntry]:
        """Append a log entry unless it is below the workflow's logging level."""
        if LOG_LEVEL_ORDER[level] < LOG_LEVEL_ORDER[self.log_level]:
            return None
        entry = ExecutionLogEntry(timestamp=_now(), level=level, message=message, step_id=step_id, data=data)
        self.logs.append(entry)
        return entry

    def append_step(self, step_execution: StepExecution) -> None:
        if self.is_terminal:
            raise InvalidStateError(f"Execution {self.id} is {self.status.value}; cannot add steps")
        self.steps.append(step_execution)

    def mark_running(self) -> None:
        if self.status != ExecutionStatus.PENDING:
            raise InvalidStateError(f"Execution {self.id} cannot start from {self.status.value}")
        self.status = ExecutionStatus.RUNNING
        self.start_time = _now()

    def finish(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        if self.is_terminal:
            raise InvalidStateError(f"Execution {self.id} already finished as {self.status.value}")
        if status not in TERMINAL_EXECUTION_STATUSES:
            raise InvalidStateError(f"{status.value} is not a terminal status")
        self.status = status
        self.error = error
        self.end_time = _now()
        if self.start_time is None:
            self.start_time = self.end_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "trigger_type": self.trigger_type.value,
            "trigger_payload": self.trigger_payload,
            "created_at": self.created_at.isoformat(),
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "context": self.context.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "error": self.error,
            "logs": [entry.to_dict() for entry in self.logs],
        }
