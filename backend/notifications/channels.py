"""Notification channels: an in-memory inbox and an outbound webhook."""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    WEBHOOK = "webhook"


@dataclass
class Notification:
    type: str
    title: str
    message: str
    channel: NotificationChannel
    recipient: str = ""  # user id, or a webhook URL
    data: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)

    def payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "recipient": self.recipient,
            "data": self.data,
            "timestamp": self.created_at,
        }


@dataclass
class DeliveryResult:
    success: bool
    channel: NotificationChannel
    recipient: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None

    @classmethod
    def delivered(cls, channel: NotificationChannel, recipient: str, message: str) -> "DeliveryResult":
        return cls(True, channel, recipient, message=message, delivered_at=_now())

    @classmethod
    def failed(cls, channel: NotificationChannel, recipient: str, error: str) -> "DeliveryResult":
        return cls(False, channel, recipient, error=error)


class BaseChannel(ABC):
    channel_type: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        ...


class InAppChannel(BaseChannel):
    """Per-recipient inboxes, oldest entries dropped past ``max_per_recipient``."""

    channel_type = NotificationChannel.IN_APP

    def __init__(self, max_per_recipient: int = 500):
        self._inbox: dict[str, deque] = defaultdict(lambda: deque(maxlen=max_per_recipient))

    async def send(self, notification: Notification) -> DeliveryResult:
        if not notification.recipient:
            return DeliveryResult.failed(self.channel_type, "", "No recipient")
        self._inbox[notification.recipient].append(notification)
        return DeliveryResult.delivered(self.channel_type, notification.recipient, "Stored in inbox")

    def inbox(self, recipient: str) -> list[Notification]:
        return list(self._inbox.get(recipient, ()))


class WebhookChannel(BaseChannel):
    """POST notifications as JSON.

    A recipient that is itself an http(s) URL is posted to directly; any
    other recipient goes to ``config["url"]``. ``config["headers"]`` is
    merged into every request.
    """

    channel_type = NotificationChannel.WEBHOOK

    def __init__(self, config: Optional[dict] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or {}
        self._client = client

    def _target(self, recipient: str) -> Optional[str]:
        if recipient.startswith(("http://", "https://")):
            return recipient
        return self.config.get("url")

    async def _post(self, url: str, payload: dict, headers: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=15) as client:
            return await client.post(url, json=payload, headers=headers)

    async def send(self, notification: Notification) -> DeliveryResult:
        url = self._target(notification.recipient)
        if not url:
            return DeliveryResult.failed(self.channel_type, notification.recipient, "No webhook URL")

        headers = {"X-Workflow-Event": notification.type, **self.config.get("headers", {})}
        try:
            response = await self._post(url, notification.payload(), headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook notification to {url} failed: {e}")
            return DeliveryResult.failed(self.channel_type, notification.recipient, str(e))

        return DeliveryResult.delivered(self.channel_type, url, f"Webhook delivered (HTTP {response.status_code})")
