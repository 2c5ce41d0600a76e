"""Persistence collaborator.

The engine and the workflow service write through this interface on a
best-effort basis: a failed write is logged by the caller and never aborts
a run. ``InMemoryPersistence`` keeps plain dict snapshots and is what the
application container wires by default.
"""

import asyncio
import copy
from typing import Any, Optional, Protocol

from workflow.execution import Execution
from workflow.models import WorkflowDefinition


class Persistence(Protocol):
    async def save_definition(self, definition: WorkflowDefinition) -> None: ...

    async def save_execution(self, execution: Execution) -> None: ...

    async def update_execution(self, execution: Execution) -> None: ...

    async def save_record(self, record: dict[str, Any]) -> None: ...


class InMemoryPersistence:
    """Snapshot store keyed by id."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.definitions: dict[str, dict[str, Any]] = {}
        self.executions: dict[str, dict[str, Any]] = {}
        self.records: dict[str, dict[str, Any]] = {}

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            self.definitions[definition.id] = definition.model_dump(mode="json")

    async def save_execution(self, execution: Execution) -> None:
        async with self._lock:
            self.executions[execution.id] = execution.to_dict()

    async def update_execution(self, execution: Execution) -> None:
        await self.save_execution(execution)

    async def save_record(self, record: dict[str, Any]) -> None:
        async with self._lock:
            self.records[record["id"]] = copy.deepcopy(record)

    def get_execution(self, execution_id: str) -> Optional[dict[str, Any]]:
        return self.executions.get(execution_id)

    def get_definition(self, workflow_id: str) -> Optional[dict[str, Any]]:
        return self.definitions.get(workflow_id)
