"""HTTP step implementations.

``call_external_api`` calls an arbitrary URL; ``invoke_integration`` calls
a named integration whose base URL and default headers live in the
integration registry. Both go through the shared HTTP collaborator, and a
non-2xx status is a failure.
"""

from typing import Any, Dict

import structlog

from core.constants import StepType
from integrations.registry import IntegrationRegistry
from steps.base_step import BaseStepHandler, StepOutcome
from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


def _valid_method(config: Dict[str, Any]) -> bool:
    return str(config.get("method", "GET")).upper() in ALLOWED_METHODS


class CallExternalApiStep(BaseStepHandler):
    """Call an external HTTP API.

    Config:
        url: Target URL (required)
        method: HTTP method (default: GET)
        headers: Dict of HTTP headers
        body: Request body; dicts and lists are sent as JSON
        timeout_ms: Request timeout in milliseconds
    """

    step_type = StepType.CALL_EXTERNAL_API
    display_name = "Call External API"
    description = "Make an HTTP request to an external service"
    required_fields = ("url",)

    def __init__(self, http_client):
        self._http = http_client

    def validate_config(self, config: Dict[str, Any]) -> bool:
        return super().validate_config(config) and _valid_method(config)

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        url = config.get("url")
        if not url:
            return StepOutcome.fail("Missing required config: url")

        response = await self._http.request(
            str(config.get("method", "GET")).upper(),
            url,
            headers=config.get("headers") or {},
            body=config.get("body"),
            timeout_ms=config.get("timeout_ms"),
        )
        if not response.is_success:
            return StepOutcome.fail(f"HTTP {response.status}", output=response.to_dict())
        return StepOutcome.ok(response.to_dict())

    @classmethod
    def describe_config(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "format": "uri"},
                "method": {"type": "string", "enum": sorted(ALLOWED_METHODS), "default": "GET"},
                "headers": {"type": "object"},
                "body": {},
                "timeout_ms": {"type": "integer", "minimum": 1},
            },
        }


class InvokeIntegrationStep(BaseStepHandler):
    """Call a registered integration by name.

    Config:
        integration: Integration name (required)
        method: HTTP method (default: GET)
        path: Path appended to the integration's base URL
        body: Request body
        headers: Headers merged over the integration's defaults
    """

    step_type = StepType.INVOKE_INTEGRATION
    display_name = "Invoke Integration"
    description = "Call a configured external integration"
    required_fields = ("integration",)

    def __init__(self, http_client, integrations: IntegrationRegistry):
        self._http = http_client
        self._integrations = integrations

    def validate_config(self, config: Dict[str, Any]) -> bool:
        return super().validate_config(config) and _valid_method(config)

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        name = config.get("integration")
        integration = self._integrations.get(name) if name else None
        if integration is None:
            return StepOutcome.fail(f"Unknown integration: {name}")
        if not integration.config.enabled:
            return StepOutcome.fail(f"Integration '{name}' is disabled")

        headers = {**integration.config.headers, **(config.get("headers") or {})}
        try:
            response = await self._http.request(
                str(config.get("method", "GET")).upper(),
                integration.config.build_url(config.get("path", "")),
                headers=headers,
                body=config.get("body"),
                timeout_ms=integration.config.timeout_seconds * 1000,
            )
        except Exception as e:
            integration.record(error=str(e))
            raise

        if not response.is_success:
            integration.record(error=f"HTTP {response.status}")
            return StepOutcome.fail(f"HTTP {response.status}", output=response.to_dict())

        integration.record()
        return StepOutcome.ok({**response.to_dict(), "integration": name})
