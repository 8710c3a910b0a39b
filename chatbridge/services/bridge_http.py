"""Shared HTTP plumbing for the messaging-bridge clients.

Each call opens a short-lived ``httpx.AsyncClient``. Tests inject an
``httpx.MockTransport`` through the ``transport`` argument.
"""

import logging
from typing import Any

import httpx

from chatbridge.errors import UpstreamCallError
from chatbridge.utils.redaction import redact_body

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def parse_body(response: httpx.Response) -> Any:
    """Return the JSON body, the raw text when it is not JSON, or {} when empty."""
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return response.text


class BridgeHttpClient:
    """Base class with request/raise helpers for one upstream service.

    Args:
        base_url: Service root URL (no trailing slash).
        transport: Optional httpx transport override.
        timeout: Per-request timeout in seconds.
    """

    service_name = "upstream"

    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            return await client.request(
                method,
                f"{self._base_url}{path}",
                headers=self._headers(headers),
                json=json,
                params=params,
            )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the parsed body.

        Raises:
            UpstreamCallError: On any non-2xx response.
        """
        response = await self._send(method, path, headers=headers, json=json, params=params)
        body = parse_body(response)
        if not response.is_success:
            safe_body = redact_body(body)
            logger.warning(
                "%s %s %s failed: status=%s body=%s",
                self.service_name, method, path, response.status_code, safe_body,
            )
            raise UpstreamCallError(self.service_name, response.status_code, safe_body)
        return body
