"""Workflow Registry and Concurrency Gate.

Holds the active workflow definitions and counts admitted runs per
workflow. A run is admitted when it is created (pending) and released
when it reaches a terminal status, so the counter covers both queued and
running executions. Requests refused with overflow ``queue`` wait in a
per-workflow backlog and are admitted, in order, as slots free up.
"""

import threading
from collections import defaultdict, deque
from typing import Any, Optional

import structlog

from workflow.models import WorkflowDefinition

logger = structlog.get_logger(__name__)


class WorkflowRegistry:
    """Active definitions plus per-workflow admission counters.

    One lock guards every counter and backlog.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._admitted: dict[str, int] = defaultdict(int)
        self._deferred: dict[str, deque] = defaultdict(deque)

    # ─── Definitions ───────────────────────────────────────────

    def put(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            self._definitions[definition.id] = definition

    def remove(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            return self._definitions.pop(workflow_id, None)

    def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            return self._definitions.get(workflow_id)

    def list_active(self) -> list[WorkflowDefinition]:
        with self._lock:
            return list(self._definitions.values())

    # ─── Concurrency gate ──────────────────────────────────────

    def _limit(self, workflow_id: str) -> int:
        definition = self._definitions.get(workflow_id)
        return definition.settings.max_concurrent_executions if definition else 1

    def admit(self, workflow_id: str) -> bool:
        """Take a slot for a new run if the workflow is under its limit."""
        with self._lock:
            if self._admitted[workflow_id] >= self._limit(workflow_id):
                return False
            self._admitted[workflow_id] += 1
            return True

    def release(self, workflow_id: str) -> Optional[Any]:
        """Free a slot.

        Returns:
            The next deferred request for this workflow, already admitted
            into the freed slot, or None
        """
        with self._lock:
            if self._admitted[workflow_id] > 0:
                self._admitted[workflow_id] -= 1
            else:
                logger.warning("Release without admit", workflow_id=workflow_id)

            backlog = self._deferred.get(workflow_id)
            if backlog and self._admitted[workflow_id] < self._limit(workflow_id):
                self._admitted[workflow_id] += 1
                return backlog.popleft()
            return None

    def running_count(self, workflow_id: str) -> int:
        with self._lock:
            return self._admitted.get(workflow_id, 0)

    def defer(self, workflow_id: str, request: Any) -> int:
        """Queue a request until a slot frees up. Returns the backlog length."""
        with self._lock:
            self._deferred[workflow_id].append(request)
            return len(self._deferred[workflow_id])

    def deferred_count(self, workflow_id: str) -> int:
        with self._lock:
            return len(self._deferred.get(workflow_id, ()))

    def discard_deferred(self, workflow_id: str, predicate) -> Optional[Any]:
        """Remove and return the first deferred request matching ``predicate``."""
        with self._lock:
            backlog = self._deferred.get(workflow_id)
            if not backlog:
                return None
            for request in backlog:
                if predicate(request):
                    backlog.remove(request)
                    return request
            return None

    def drain_deferred(self, workflow_id: Optional[str] = None) -> list[Any]:
        """Remove and return every deferred request (for one workflow or all)."""
        with self._lock:
            keys = [workflow_id] if workflow_id else list(self._deferred)
            drained: list[Any] = []
            for key in keys:
                backlog = self._deferred.pop(key, None)
                if backlog:
                    drained.extend(backlog)
            return drained
