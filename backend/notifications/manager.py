"""Notification Manager: central dispatcher for notification channels.

Implements the notifier interface used by ``send_notification`` steps and
by run lifecycle notifications:
``notify(type, recipient_ids, title, message, data) -> bool``.
"""

import logging
from collections import deque
from typing import Optional

from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    InAppChannel,
    Notification,
    NotificationChannel,
)

logger = logging.getLogger(__name__)


class NotificationManager:
    """Central notification dispatcher.

    Manages channel registration, routing and delivery history. The in-app
    channel is always available.
    """

    def __init__(self, default_channels: Optional[list[str]] = None, history_size: int = 1000):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        self._default_channels = [NotificationChannel(c) for c in (default_channels or ["in_app"])]
        self._history: deque = deque(maxlen=history_size)
        self.register_channel(InAppChannel())

    def register_channel(self, channel: BaseChannel) -> None:
        """Register a notification channel."""
        self._channels[channel.channel_type] = channel
        logger.info(f"Notification channel registered: {channel.channel_type.value}")

    def get_channel(self, channel: str) -> Optional[BaseChannel]:
        return self._channels.get(NotificationChannel(channel))

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through its channel."""
        channel = self._channels.get(notification.channel)
        if not channel:
            result = DeliveryResult.failed(
                notification.channel,
                notification.recipient,
                f"Channel not configured: {notification.channel.value}",
            )
        else:
            result = await channel.send(notification)

        if result.success:
            logger.debug(
                f"Notification sent via {notification.channel.value} to {notification.recipient}"
            )
        else:
            logger.warning(
                f"Notification failed via {notification.channel.value}: {result.error}"
            )

        self._history.append(result)
        return result

    async def notify(
        self,
        type: str,
        recipient_ids: list[str],
        title: str,
        message: str,
        data: Optional[dict] = None,
        channels: Optional[list[str]] = None,
    ) -> bool:
        """Deliver one notification to every recipient on every channel.

        Returns:
            True when every delivery succeeded
        """
        selected = [NotificationChannel(c) for c in channels] if channels else self._default_channels
        success = True
        for recipient in recipient_ids:
            for ch in selected:
                result = await self.send(
                    Notification(
                        type=type,
                        title=title,
                        message=message,
                        channel=ch,
                        recipient=recipient,
                        data=data or {},
                    )
                )
                success = success and result.success
        return success

    @property
    def history(self) -> list[DeliveryResult]:
        return list(self._history)

    def get_status(self) -> dict:
        """Get notification manager status."""
        return {
            "channels": [ch.value for ch in self._channels.keys()],
            "default_channels": [ch.value for ch in self._default_channels],
            "delivered": sum(1 for r in self._history if r.success),
            "failed": sum(1 for r in self._history if not r.success),
        }
