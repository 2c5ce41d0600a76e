"""Outbound HTTP collaborator.

Steps never talk to httpx directly; they call ``request`` on an object with
this interface so tests can substitute a fake. ``HttpxClient`` shares one
``httpx.AsyncClient`` (connection pool) across all steps.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class HttpResponse:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> dict:
        return {"status": self.status, "body": self.body, "headers": self.headers}


class HttpClient(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> HttpResponse:
        ...


def _parse_response(response: httpx.Response) -> Any:
    """Parse response body: JSON when advertised, text otherwise."""
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class HttpxClient:
    """HttpClient backed by a shared httpx.AsyncClient."""

    def __init__(self, timeout_seconds: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_seconds),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: Optional[int] = None,
    ) -> HttpResponse:
        """Send one request. Transport errors (timeouts, refused connections) raise httpx errors."""
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = body if isinstance(body, (str, bytes)) else str(body)
        if timeout_ms:
            kwargs["timeout"] = httpx.Timeout(timeout_ms / 1000)

        start = time.monotonic()
        response = await self._get_client().request(method.upper(), url, **kwargs)
        duration_ms = (time.monotonic() - start) * 1000

        logger.debug(
            "HTTP request completed",
            method=method.upper(),
            url=url,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return HttpResponse(
            status=response.status_code,
            body=_parse_response(response),
            headers=dict(response.headers),
            duration_ms=duration_ms,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
