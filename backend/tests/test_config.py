"""Tests for settings, logging setup and application wiring."""

import logging

import pytest
import structlog

from app.config import Settings
from app.main import build_application, build_event_bus
from core import metrics
from core.constants import TriggerType
from core.logging_config import execution_log_context, setup_logging
from triggers.handlers.event_bus import InMemoryEventBus, RedisEventBus


@pytest.mark.unit
class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.DEFAULT_STEP_TIMEOUT == 300
        assert settings.MAX_STEP_VISITS == 100
        assert settings.EVENT_BUS_BACKEND == "memory"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MAX_PARALLEL_RUNS", "8")
        monkeypatch.setenv("ENVIRONMENT", "production")
        settings = Settings()
        assert settings.MAX_PARALLEL_RUNS == 8
        assert settings.is_production
        assert not settings.is_development

    def test_integrations_from_json_environment(self, monkeypatch):
        monkeypatch.setenv("INTEGRATIONS", '[{"name": "crm", "base_url": "https://crm.example.com/"}]')
        assert Settings().INTEGRATIONS == [{"name": "crm", "base_url": "https://crm.example.com/"}]


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.mark.unit
@pytest.mark.usefixtures("restore_logging")
class TestLogging:
    def test_setup_logging_routes_stdlib_through_structlog(self):
        setup_logging(Settings(LOG_LEVEL="DEBUG", LOG_FORMAT="json", ENVIRONMENT="production"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(Settings(LOG_LEVEL="chatty"))
        assert logging.getLogger().level == logging.INFO

    def test_execution_log_context_binds_run_ids(self):
        with execution_log_context("wf-1", "ex-1"):
            bound = structlog.contextvars.get_contextvars()
        assert bound == {"workflow_id": "wf-1", "execution_id": "ex-1"}
        assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.unit
class TestWiring:
    def test_event_bus_backend(self):
        assert isinstance(build_event_bus(Settings(EVENT_BUS_BACKEND="memory")), InMemoryEventBus)
        bus = build_event_bus(Settings(EVENT_BUS_BACKEND="redis", EVENT_CHANNEL_PREFIX="t:"))
        assert isinstance(bus, RedisEventBus)
        assert bus.channel_for("x") == "t:x"

    async def test_application_components_share_collaborators(self):
        app = build_application(Settings(MAX_PARALLEL_RUNS=3))
        try:
            assert app.step_handlers.frozen
            assert app.dispatcher.max_parallel_runs == 3
            assert app.triggers.event_bus is app.triggers.get_handler(TriggerType.EVENT).bus
        finally:
            await app.stop()

    async def test_metrics_exposition(self):
        metrics.inc(metrics.EXECUTIONS_TOTAL, labels={"status": "failed"})
        text = metrics.generate_metrics()
        assert "# TYPE workflow_executions_total counter" in text
        assert 'workflow_executions_total{status="failed"} 1.0' in text

    async def test_configured_integrations_and_webhook_channel(self):
        app = build_application(
            Settings(
                INTEGRATIONS=[{"name": "crm", "base_url": "https://crm.example.com/"}],
                NOTIFICATION_WEBHOOK_URL="https://hooks.example.com/n",
            )
        )
        try:
            assert app.integrations.get("crm").config.build_url("contacts") == "https://crm.example.com/contacts"
            assert app.notifications.get_channel("webhook").config == {"url": "https://hooks.example.com/n"}
        finally:
            await app.stop()
