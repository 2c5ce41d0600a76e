"""Event bus trigger handler.

Workflows with an ``event`` trigger subscribe to a named channel on the
event bus. Internal services (and, with the Redis backend, external
systems) publish events that trigger workflows; the event payload becomes
the trigger data. Each arm creates an explicit subscription that is
unsubscribed on disarm.
"""

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, Union

import redis.asyncio as aioredis

from core.constants import TriggerType
from triggers.base import BaseTriggerHandler, TriggerResult
from workflow.models import TriggerConfig

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict], Union[Awaitable[Any], Any]]


class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe`` to detach."""

    def __init__(self, bus: "BaseEventBus", event_name: str, callback: EventCallback):
        self.bus = bus
        self.event_name = event_name
        self.callback = callback
        self.active = True

    async def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            await self.bus._remove(self)


class BaseEventBus(ABC):
    """Callback registry shared by the event bus backends."""

    def __init__(self):
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)

    async def subscribe(self, event_name: str, callback: EventCallback) -> Subscription:
        subscription = Subscription(self, event_name, callback)
        self._subscriptions[event_name].append(subscription)
        return subscription

    @abstractmethod
    async def publish(self, event_name: str, payload: Optional[dict] = None) -> int:
        """Deliver ``payload`` to subscribers of ``event_name``; returns the receiver count."""
        ...

    async def close(self) -> None:
        self._subscriptions.clear()

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscriptions.get(event_name, ()))

    async def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.event_name)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscriptions[subscription.event_name]

    async def _deliver(self, event_name: str, payload: dict) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.get(event_name, ())):
            try:
                result = subscription.callback(event_name, payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                logger.error("Event subscriber for %s failed: %s", event_name, exc)
        return delivered


class InMemoryEventBus(BaseEventBus):
    """In-process bus: ``publish`` delivers to subscribers before returning."""

    async def publish(self, event_name: str, payload: Optional[dict] = None) -> int:
        """Deliver an event to every subscriber.

        Returns:
            Number of subscribers that handled the event
        """
        return await self._deliver(event_name, dict(payload or {}))


class RedisEventBus(BaseEventBus):
    """Redis pub/sub backed bus.

    One listener task per subscribed channel; the task is cancelled when
    the last subscriber of that channel unsubscribes. Payloads are sent as
    JSON.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        channel_prefix: str = "workflow:events:",
        client: Optional[aioredis.Redis] = None,
    ):
        super().__init__()
        self._client = client or aioredis.from_url(redis_url)
        self._prefix = channel_prefix
        self._listener_tasks: dict[str, asyncio.Task] = {}

    def channel_for(self, event_name: str) -> str:
        return f"{self._prefix}{event_name}"

    async def subscribe(self, event_name: str, callback: EventCallback) -> Subscription:
        subscription = await super().subscribe(event_name, callback)
        if event_name not in self._listener_tasks:
            self._listener_tasks[event_name] = asyncio.create_task(
                self._listen_channel(event_name), name=f"event-listener-{event_name}"
            )
            logger.info("Started Redis subscriber for channel: %s", self.channel_for(event_name))
        return subscription

    async def publish(self, event_name: str, payload: Optional[dict] = None) -> int:
        """Publish an event to Redis.

        Returns:
            Number of Redis subscribers that received the message
        """
        return await self._client.publish(self.channel_for(event_name), json.dumps(payload or {}, default=str))

    async def close(self) -> None:
        for task in list(self._listener_tasks.values()):
            task.cancel()
        if self._listener_tasks:
            await asyncio.gather(*self._listener_tasks.values(), return_exceptions=True)
        self._listener_tasks.clear()
        await super().close()
        await self._client.aclose()

    async def _remove(self, subscription: Subscription) -> None:
        await super()._remove(subscription)
        if subscription.event_name not in self._subscriptions:
            task = self._listener_tasks.pop(subscription.event_name, None)
            if task and not task.done():
                task.cancel()
                logger.info("Stopped Redis subscriber for channel: %s", self.channel_for(subscription.event_name))

    async def _listen_channel(self, event_name: str) -> None:
        """Background task that forwards messages from one Redis channel to subscribers."""
        channel = self.channel_for(event_name)
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info("Listening on Redis channel: %s", channel)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                await self._deliver(event_name, self._decode(message["data"]))

        except asyncio.CancelledError:
            logger.info("Redis listener cancelled for channel: %s", channel)
            raise
        except Exception as exc:
            logger.error("Redis listener error for channel %s: %s", channel, exc, exc_info=True)
        finally:
            await pubsub.aclose()

    @staticmethod
    def _decode(raw_data) -> dict:
        try:
            if isinstance(raw_data, bytes):
                raw_data = raw_data.decode("utf-8")
            payload = json.loads(raw_data) if raw_data else {}
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {"raw": str(raw_data)}
        return payload if isinstance(payload, dict) else {"value": payload}


class EventBusTriggerHandler(BaseTriggerHandler):
    """Handler for event triggers.

    Config (``TriggerConfig``):
        {
            "type": "event",
            "event_name": "orders.created"
        }
    """

    trigger_type = TriggerType.EVENT

    def __init__(self, bus: BaseEventBus):
        super().__init__()
        self._bus = bus
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def bus(self) -> BaseEventBus:
        return self._bus

    async def start(self, workflow_id: str, trigger: TriggerConfig) -> TriggerResult:
        """Subscribe the workflow to its event name."""
        is_valid, error = self.validate_config(trigger)
        if not is_valid:
            return TriggerResult(success=False, message=f"Invalid config: {error}", workflow_id=workflow_id, error=error)

        await self.stop(workflow_id)

        async def on_event(event_name: str, payload: dict) -> None:
            if self._fire_callback is None:
                return
            await self._fire_callback(workflow_id, payload, f"event:{event_name}")
            logger.info("Event %s fired workflow %s", event_name, workflow_id)

        self._subscriptions[workflow_id] = await self._bus.subscribe(trigger.event_name, on_event)
        return TriggerResult(
            success=True,
            message=f"Subscribed to event: {trigger.event_name}",
            workflow_id=workflow_id,
        )

    async def stop(self, workflow_id: str) -> TriggerResult:
        """Unsubscribe the workflow from its event name."""
        subscription = self._subscriptions.pop(workflow_id, None)
        if subscription is not None:
            await subscription.unsubscribe()
        return TriggerResult(success=True, message="Unsubscribed from event", workflow_id=workflow_id)

    def validate_config(self, trigger: TriggerConfig) -> tuple[bool, Optional[str]]:
        if not trigger.event_name:
            return False, "Missing required field: event_name"
        return True, None

    def get_workflows_for_event(self, event_name: str) -> list[str]:
        return sorted(wid for wid, sub in self._subscriptions.items() if sub.event_name == event_name)

    def list_active(self) -> list[str]:
        return sorted(self._subscriptions)
