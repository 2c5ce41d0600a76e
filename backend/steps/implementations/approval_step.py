"""Approval step and the broker that collects decisions.

A ``require_approval`` step parks on the broker until someone approves or
rejects the request, or the step timeout cancels the wait.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from core.constants import StepType
from core.exceptions import WorkflowEngineError
from steps.base_step import BaseStepHandler, StepOutcome
from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


@dataclass
class ApprovalRequest:
    execution_id: str
    step_id: Optional[str]
    approvers: list[str]
    message: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    future: asyncio.Future = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "approvers": self.approvers,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ApprovalDecision:
    approved: bool
    decided_by: Optional[str] = None
    comment: str = ""


class ApprovalBroker:
    """Holds pending approval requests until a decision arrives."""

    def __init__(self):
        self._pending: Dict[str, ApprovalRequest] = {}

    def open(self, execution_id: str, step_id: Optional[str], approvers: list[str], message: str) -> ApprovalRequest:
        request = ApprovalRequest(
            execution_id=execution_id,
            step_id=step_id,
            approvers=approvers,
            message=message,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request.id] = request
        logger.info("Approval requested", request_id=request.id, execution_id=execution_id, approvers=approvers)
        return request

    async def wait(self, request: ApprovalRequest) -> ApprovalDecision:
        try:
            return await request.future
        finally:
            self._pending.pop(request.id, None)

    def decide(self, request_id: str, approved: bool, decided_by: Optional[str] = None, comment: str = "") -> None:
        request = self._pending.get(request_id)
        if request is None or request.future.done():
            raise WorkflowEngineError(f"No pending approval request: {request_id}", 404)
        if request.approvers and decided_by not in request.approvers:
            raise WorkflowEngineError(f"{decided_by} is not an approver for request {request_id}", 403)
        request.future.set_result(ApprovalDecision(approved=approved, decided_by=decided_by, comment=comment))
        logger.info("Approval decided", request_id=request_id, approved=approved, decided_by=decided_by)

    def pending(self, execution_id: Optional[str] = None) -> list[ApprovalRequest]:
        return [
            r for r in self._pending.values()
            if execution_id is None or r.execution_id == execution_id
        ]


class RequireApprovalStep(BaseStepHandler):
    """Wait for a human decision.

    Config:
        approvers: User ids allowed to decide (empty: anyone)
        message: Text shown to approvers
        auto_approve: Approve immediately without waiting (default: false)
    """

    step_type = StepType.REQUIRE_APPROVAL
    display_name = "Require Approval"
    description = "Pause until a user approves or rejects"

    def __init__(self, broker: ApprovalBroker):
        self._broker = broker

    def validate_config(self, config: Dict[str, Any]) -> bool:
        return isinstance(config.get("approvers", []), (list, str))

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        if config.get("auto_approve"):
            return StepOutcome.ok({"approved": True, "decided_by": "auto"})

        approvers = config.get("approvers") or []
        if isinstance(approvers, str):
            approvers = [approvers]

        request = self._broker.open(
            context.execution_id,
            context.current_step_id,
            [str(a) for a in approvers],
            config.get("message", ""),
        )
        decision = await self._broker.wait(request)

        output = {"approved": decision.approved, "decided_by": decision.decided_by, "request_id": request.id}
        if not decision.approved:
            return StepOutcome.fail(f"Rejected by {decision.decided_by}", output=output)
        return StepOutcome.ok(output)
