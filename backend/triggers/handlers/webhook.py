"""Webhook trigger handler.

Maps inbound webhook paths to workflows. External systems call the path
with a body that becomes the trigger data; when the trigger carries a
secret the body must be signed with HMAC-SHA256 (``sha256=<hex>``).
"""

import hashlib
import hmac
from typing import Optional

from core.constants import TriggerType
from triggers.base import BaseTriggerHandler, TriggerResult
from workflow.models import TriggerConfig


def normalize_path(path: str) -> str:
    path = path.strip()
    if not path.startswith("/"):
        path = f"/{path}"
    return path.rstrip("/") or "/"


def sign_body(secret: str, body: bytes) -> str:
    """Signature header value for ``body`` under ``secret``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookTriggerHandler(BaseTriggerHandler):
    """Handler for webhook-based triggers.

    Config (``TriggerConfig``):
        {
            "type": "webhook",
            "webhook_path": "/hooks/orders",
            "webhook_secret": "..."     # optional HMAC secret
        }
    """

    trigger_type = TriggerType.WEBHOOK

    def __init__(self):
        super().__init__()
        # workflow_id -> (path, secret)
        self._active: dict[str, tuple[str, Optional[str]]] = {}
        # path -> workflow_id
        self._path_map: dict[str, str] = {}

    async def start(self, workflow_id: str, trigger: TriggerConfig) -> TriggerResult:
        """Register the webhook path for a workflow."""
        is_valid, error = self.validate_config(trigger)
        if not is_valid:
            return TriggerResult(success=False, message=f"Invalid config: {error}", workflow_id=workflow_id, error=error)

        path = normalize_path(trigger.webhook_path)
        owner = self._path_map.get(path)
        if owner is not None and owner != workflow_id:
            error = f"Webhook path {path} is already registered"
            return TriggerResult(success=False, message=error, workflow_id=workflow_id, error=error)

        await self.stop(workflow_id)
        self._active[workflow_id] = (path, trigger.webhook_secret)
        self._path_map[path] = workflow_id
        return TriggerResult(success=True, message=f"Webhook registered at {path}", workflow_id=workflow_id)

    async def stop(self, workflow_id: str) -> TriggerResult:
        """Unregister the workflow's webhook path."""
        entry = self._active.pop(workflow_id, None)
        if entry:
            self._path_map.pop(entry[0], None)
        return TriggerResult(success=True, message="Webhook unregistered", workflow_id=workflow_id)

    def validate_config(self, trigger: TriggerConfig) -> tuple[bool, Optional[str]]:
        if not trigger.webhook_path or not trigger.webhook_path.strip():
            return False, "Missing required field: webhook_path"
        return True, None

    def verify_signature(self, workflow_id: str, body: bytes, signature: Optional[str]) -> bool:
        """Verify the HMAC signature of a webhook body."""
        entry = self._active.get(workflow_id)
        if not entry or not entry[1]:
            return True  # No secret configured, skip verification
        if not signature:
            return False
        return hmac.compare_digest(sign_body(entry[1], body), signature)

    def get_workflow_for_path(self, path: str) -> Optional[str]:
        return self._path_map.get(normalize_path(path))

    def list_active(self) -> list[str]:
        return sorted(self._active)
