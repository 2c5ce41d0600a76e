"""Custom exceptions for the workflow automation engine."""

from typing import Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow automation engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP-style status code for operator-facing callers
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class WorkflowNotFoundError(WorkflowEngineError):
    """Workflow definition not found."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}", 404)


class ExecutionNotFoundError(WorkflowEngineError):
    """Execution not found."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}", 404)


class WorkflowValidationError(WorkflowEngineError):
    """Configuration error detected at create/update/activation time."""

    def __init__(self, message: str = "Workflow validation failed", problems: Optional[list[str]] = None):
        self.problems = problems or []
        if self.problems:
            message = f"{message}: {'; '.join(self.problems)}"
        super().__init__(message, 422)


class InvalidStateError(WorkflowEngineError):
    """Illegal lifecycle transition for a workflow or execution."""

    def __init__(self, message: str):
        super().__init__(message, 409)


class ConcurrencyLimitError(WorkflowEngineError):
    """The concurrency gate refused a new run."""

    def __init__(self, workflow_id: str, limit: int):
        self.workflow_id = workflow_id
        self.limit = limit
        super().__init__(
            f"Maximum concurrent executions reached for workflow {workflow_id} (limit {limit})",
            429,
        )


class HandlerNotFoundError(WorkflowEngineError):
    """No step handler registered for a step type."""

    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"No handler registered for step type: {step_type}", 422)


class RegistryFrozenError(WorkflowEngineError):
    """Registration attempted after the handler registry was frozen."""

    def __init__(self, step_type: str):
        super().__init__(f"Handler registry is frozen; cannot register '{step_type}'", 409)


class TriggerError(WorkflowEngineError):
    """Trigger could not be armed, disarmed or fired."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code)
