"""Record creation step.

Builds a record (task, ticket, to-do) from the step config and hands it to
an optional record sink, usually the persistence collaborator.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

import structlog

from core.constants import StepType
from steps.base_step import BaseStepHandler, StepOutcome
from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)

RECORD_FIELDS = ("title", "description", "project_id", "assignee_id", "priority", "due_date")


class CreateRecordStep(BaseStepHandler):
    """Create a record.

    Config:
        title: Record title (required)
        project_id: Owning project (required)
        description: Free text
        assignee_id: User the record is assigned to
        priority: low | medium | high | urgent (default: medium)
        due_date: ISO date
    """

    step_type = StepType.CREATE_RECORD
    display_name = "Create Record"
    description = "Create a record such as a task or ticket"
    required_fields = ("title", "project_id")

    def __init__(self, record_sink=None):
        self._record_sink = record_sink

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        missing = [name for name in self.required_fields if not config.get(name)]
        if missing:
            return StepOutcome.fail(f"Missing required config: {', '.join(missing)}")

        record = {name: config.get(name) for name in RECORD_FIELDS}
        record["priority"] = record["priority"] or "medium"
        record["id"] = str(uuid.uuid4())
        record["workflow_id"] = context.workflow_id
        record["execution_id"] = context.execution_id
        record["created_at"] = datetime.now(timezone.utc).isoformat()

        if self._record_sink is not None:
            await self._record_sink.save_record(record)

        logger.info("Record created", record_id=record["id"], project_id=record["project_id"])
        return StepOutcome.ok({"record_id": record["id"], "record": record})

    @classmethod
    def describe_config(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["title", "project_id"],
            "properties": {
                "title": {"type": "string"},
                "description": {"type": "string"},
                "project_id": {"type": "string"},
                "assignee_id": {"type": "string"},
                "priority": {"type": "string", "enum": ["low", "medium", "high", "urgent"], "default": "medium"},
                "due_date": {"type": "string", "format": "date"},
            },
        }
