"""Workflow Automation Engine - application container and process entrypoint.

Every component is constructed once here and handed to whoever needs it.
"""

import asyncio
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from app.config import Settings, get_settings
from core.logging_config import setup_logging
from integrations.http_client import HttpxClient
from integrations.registry import IntegrationRegistry
from notifications.channels import WebhookChannel
from notifications.manager import NotificationManager
from services.persistence import InMemoryPersistence
from services.workflow_service import WorkflowService
from steps.implementations.approval_step import ApprovalBroker
from steps.implementations.custom_step import CustomActionTable
from steps.registry import StepHandlerRegistry, build_default_registry
from triggers.handlers.event_bus import BaseEventBus, InMemoryEventBus, RedisEventBus
from triggers.manager import TriggerManager
from workflow.dispatcher import Dispatcher
from workflow.engine import WorkflowEngine
from workflow.registry import WorkflowRegistry
from workflow.step_executor import StepExecutor

logger = structlog.get_logger(__name__)


@dataclass
class Application:
    """The wired component graph of one process."""

    settings: Settings
    persistence: InMemoryPersistence
    notifications: NotificationManager
    http_client: HttpxClient
    integrations: IntegrationRegistry
    approvals: ApprovalBroker
    custom_actions: CustomActionTable
    step_handlers: StepHandlerRegistry
    engine: WorkflowEngine
    registry: WorkflowRegistry
    dispatcher: Dispatcher
    triggers: TriggerManager
    service: WorkflowService

    async def start(self) -> None:
        await self.service.start()
        logger.info(
            "Application started",
            app=self.settings.APP_NAME,
            version=self.settings.APP_VERSION,
            environment=self.settings.ENVIRONMENT,
            event_bus=self.settings.EVENT_BUS_BACKEND,
        )

    async def stop(self) -> None:
        logger.info("Application shutting down")
        await self.service.shutdown(grace_period=self.settings.SHUTDOWN_GRACE_PERIOD)
        await self.http_client.aclose()


def build_event_bus(settings: Settings) -> BaseEventBus:
    if settings.EVENT_BUS_BACKEND == "redis":
        return RedisEventBus(redis_url=settings.REDIS_URL, channel_prefix=settings.EVENT_CHANNEL_PREFIX)
    return InMemoryEventBus()


def build_application(
    settings: Optional[Settings] = None,
    event_bus: Optional[BaseEventBus] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Application:
    """Construct and wire every component.

    Args:
        settings: Overrides the cached environment settings
        event_bus: Overrides the bus selected by ``EVENT_BUS_BACKEND``
        sleep: Replaces ``asyncio.sleep`` for retry backoff and wait steps
    """
    settings = settings or get_settings()

    persistence = InMemoryPersistence()
    notifications = NotificationManager()
    if settings.NOTIFICATION_WEBHOOK_URL:
        notifications.register_channel(WebhookChannel({"url": settings.NOTIFICATION_WEBHOOK_URL}))
    http_client = HttpxClient(timeout_seconds=settings.HTTP_TIMEOUT)
    integrations = IntegrationRegistry(settings.INTEGRATIONS)
    approvals = ApprovalBroker()
    custom_actions = CustomActionTable()

    step_handlers = build_default_registry(
        http_client,
        notifications,
        approvals=approvals,
        integrations=integrations,
        custom_actions=custom_actions,
        record_sink=persistence,
        sleep=sleep,
    )

    engine = WorkflowEngine(StepExecutor(step_handlers, sleep=sleep), persistence=persistence)
    registry = WorkflowRegistry()
    dispatcher = Dispatcher(
        engine,
        registry,
        poll_interval=settings.POLL_INTERVAL,
        max_parallel_runs=settings.MAX_PARALLEL_RUNS,
    )
    triggers = TriggerManager(event_bus=event_bus or build_event_bus(settings))

    service = WorkflowService(
        engine,
        dispatcher,
        registry,
        triggers,
        step_handlers,
        persistence=persistence,
        notifier=notifications,
        max_execution_history=settings.MAX_EXECUTION_HISTORY,
        step_timeout=settings.DEFAULT_STEP_TIMEOUT,
        execution_timeout=settings.DEFAULT_EXECUTION_TIMEOUT,
        max_step_visits=settings.MAX_STEP_VISITS,
    )

    return Application(
        settings=settings,
        persistence=persistence,
        notifications=notifications,
        http_client=http_client,
        integrations=integrations,
        approvals=approvals,
        custom_actions=custom_actions,
        step_handlers=step_handlers,
        engine=engine,
        registry=registry,
        dispatcher=dispatcher,
        triggers=triggers,
        service=service,
    )


async def serve(app: Application) -> None:
    """Run until SIGINT/SIGTERM, then shut down cleanly."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows event loops

    await app.start()
    try:
        await stop.wait()
    finally:
        await app.stop()


def run() -> None:
    setup_logging()
    asyncio.run(serve(build_application()))


if __name__ == "__main__":
    run()
