"""Execution context shared by the steps of one run."""

import copy
from dataclasses import dataclass, field
from typing import Any, Optional


class _Missing:
    """Marker for a field that is absent (as opposed to present and falsy)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def lookup_path(data: Any, path: str) -> Any:
    """Read a dotted path from nested dicts/lists.

    An exact key match wins over a dotted walk, so keys that themselves
    contain dots stay addressable. Returns MISSING when any segment is absent.
    """
    if isinstance(data, dict) and path in data:
        return data[path]

    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


@dataclass
class ExecutionContext:
    """State owned by exactly one execution.

    Holds variables, the trigger payload snapshot and the outputs of the
    steps that already ran. Entries in ``step_results`` are never removed;
    a revisited step overwrites its own entry.
    """

    workflow_id: str
    execution_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    trigger_payload: dict[str, Any] = field(default_factory=dict)
    step_results: dict[str, Any] = field(default_factory=dict)
    step_errors: dict[str, str] = field(default_factory=dict)
    current_step_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        workflow_id: str,
        execution_id: str,
        variables: Optional[dict] = None,
        trigger_payload: Optional[dict] = None,
    ) -> "ExecutionContext":
        """Build a fresh context; the trigger payload is copied so later edits by the caller are not seen."""
        return cls(
            workflow_id=workflow_id,
            execution_id=execution_id,
            variables=dict(variables or {}),
            trigger_payload=copy.deepcopy(trigger_payload or {}),
        )

    def set_variable(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def record_step_output(self, step_id: str, output: Any) -> None:
        self.step_results[step_id] = output
        self.step_errors.pop(step_id, None)

    def record_step_error(self, step_id: str, error: str) -> None:
        self.step_errors[step_id] = error

    def get_step_output(self, step_id: str) -> Any:
        return self.step_results.get(step_id)

    def to_dict(self) -> dict:
        """Serialize context for persistence."""
        return {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "variables": self.variables,
            "trigger_payload": self.trigger_payload,
            "step_results": self.step_results,
            "step_errors": self.step_errors,
            "current_step_id": self.current_step_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionContext":
        """Restore context from a persisted dict."""
        return cls(
            workflow_id=data["workflow_id"],
            execution_id=data["execution_id"],
            variables=data.get("variables", {}),
            trigger_payload=data.get("trigger_payload", {}),
            step_results=data.get("step_results", {}),
            step_errors=data.get("step_errors", {}),
            current_step_id=data.get("current_step_id"),
            metadata=data.get("metadata", {}),
        )
