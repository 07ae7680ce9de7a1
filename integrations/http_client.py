"""
OutboundHttpClient: client used by api_call nodes.

Responsibility:
- Perform a single HTTP request with the declared method
- Return status + decoded body (JSON when possible, text otherwise)
- Let network errors propagate so the retry policy sees them
"""

import logging
from typing import Any

import httpx

from shared.models import ApiResponse

logger = logging.getLogger(__name__)


class OutboundHttpClient:
    """Thin async wrapper over httpx for workflow api_call nodes."""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> ApiResponse:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        method = method.upper()
        logger.info("Outbound call: %s %s", method, url)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            if body is None or method in ("GET", "HEAD"):
                response = await client.request(method, url, headers=request_headers)
            elif isinstance(body, (dict, list)):
                response = await client.request(method, url, headers=request_headers, json=body)
            else:
                response = await client.request(method, url, headers=request_headers, content=str(body))

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return ApiResponse(status=response.status_code, data=data, reason=response.reason_phrase)
