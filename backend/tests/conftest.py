"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- A fake ``sleep`` that records delays instead of waiting
- A fake HTTP collaborator
- A custom action table with ok / fail / flaky / sleep actions
- Step handler registry, engine and fully wired application fixtures
- Factories for workflow definitions and executions
"""

import asyncio
import os
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("EVENT_BUS_BACKEND", "memory")

from app.config import Settings  # noqa: E402
from app.main import build_application  # noqa: E402
from core import metrics  # noqa: E402
from integrations.http_client import HttpResponse  # noqa: E402
from notifications.manager import NotificationManager  # noqa: E402
from services.persistence import InMemoryPersistence  # noqa: E402
from steps.implementations.custom_step import CustomActionTable  # noqa: E402
from steps.registry import build_default_registry  # noqa: E402
from triggers.handlers.event_bus import InMemoryEventBus  # noqa: E402
from workflow.context import ExecutionContext  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.execution import Execution  # noqa: E402
from workflow.models import WorkflowDefinition  # noqa: E402
from workflow.step_executor import StepExecutor  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeSleep:
    """Stands in for asyncio.sleep: records the delay and yields once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeHttpClient:
    """HTTP collaborator returning canned responses in order."""

    def __init__(self, responses: Optional[list[HttpResponse]] = None):
        self.responses = list(responses or [])
        self.requests: list[dict[str, Any]] = []

    async def request(self, method, url, headers=None, body=None, timeout_ms=None) -> HttpResponse:
        self.requests.append(
            {"method": method, "url": url, "headers": headers, "body": body, "timeout_ms": timeout_ms}
        )
        if self.responses:
            return self.responses.pop(0)
        return HttpResponse(status=200, body={"ok": True})


def register_test_actions(table: CustomActionTable) -> dict[str, int]:
    """Register the actions used across the suite. Returns the flaky call counter."""
    calls: dict[str, int] = {}

    @table.action("ok")
    def ok(params, context):
        return {"ok": True, **params}

    @table.action("fail")
    def fail(params, context):
        raise RuntimeError(params.get("message", "boom"))

    @table.action("flaky")
    def flaky(params, context):
        key = params.get("key", "default")
        calls[key] = calls.get(key, 0) + 1
        if calls[key] < params.get("succeed_on", 2):
            raise RuntimeError(f"flaky failure {calls[key]}")
        return {"attempts": calls[key]}

    @table.action("sleep")
    async def sleep(params, context):
        await asyncio.sleep(params.get("seconds", 5))
        return {"slept": params.get("seconds", 5)}

    return calls


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def http_client() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def notifier() -> NotificationManager:
    return NotificationManager()


@pytest.fixture
def actions() -> CustomActionTable:
    table = CustomActionTable()
    register_test_actions(table)
    return table


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def handlers(http_client, notifier, actions, persistence, fake_sleep):
    return build_default_registry(
        http_client,
        notifier,
        custom_actions=actions,
        record_sink=persistence,
        sleep=fake_sleep,
    )


@pytest.fixture
def step_executor(handlers, fake_sleep) -> StepExecutor:
    return StepExecutor(handlers, sleep=fake_sleep)


@pytest.fixture
def engine(step_executor, persistence) -> WorkflowEngine:
    return WorkflowEngine(step_executor, persistence=persistence)


@pytest_asyncio.fixture
async def app(fake_sleep):
    """Fully wired application with an in-memory event bus and a fast dispatcher."""
    application = build_application(
        settings=Settings(POLL_INTERVAL=0.01, MAX_PARALLEL_RUNS=4),
        event_bus=InMemoryEventBus(),
        sleep=fake_sleep,
    )
    register_test_actions(application.custom_actions)
    yield application
    await application.stop()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def custom_step(step_id: str, action: str = "ok", **fields) -> dict:
    """Step dict running a registered custom action."""
    params = fields.pop("params", {})
    return {"id": step_id, "type": "custom", "config": {"action": action, "params": params}, **fields}


NO_RETRY = {"retry_policy": {"enabled": False}}


@pytest.fixture
def make_workflow():
    def _make(steps: list[dict], settings: Optional[dict] = None, **fields) -> WorkflowDefinition:
        data = {"name": "Test workflow", "steps": steps, "settings": {**NO_RETRY, **(settings or {})}, **fields}
        return WorkflowDefinition.model_validate(data)

    return _make


@pytest.fixture
def make_execution():
    def _make(
        definition: WorkflowDefinition,
        payload: Optional[dict] = None,
        variables: Optional[dict] = None,
    ) -> Execution:
        execution_id = str(uuid4())
        context = ExecutionContext.create(
            definition.id,
            execution_id,
            {**definition.initial_variables(), **(variables or {})},
            payload,
        )
        return Execution(
            id=execution_id,
            workflow_id=definition.id,
            workflow_version=definition.version,
            context=context,
            trigger_payload=payload or {},
        )

    return _make
