"""
Notification dispatchers.

Responsibility:
- Hand a NotificationRequest to a delivery channel
- Never block the engine on delivery confirmation
- Log (never raise) delivery failures of background sends
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from shared.models import NotificationRequest

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Fire-and-forget notification sink."""

    @abstractmethod
    async def send_notification(self, request: NotificationRequest) -> None:
        """Issue the notification. Must return without awaiting delivery."""


class InMemoryNotificationDispatcher(NotificationDispatcher):
    """Records notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[NotificationRequest] = []

    async def send_notification(self, request: NotificationRequest) -> None:
        self.sent.append(request)
        logger.info("Notification recorded: type=%s recipient=%s", request.type, request.recipient)

    def of_type(self, notification_type: str) -> list[NotificationRequest]:
        return [item for item in self.sent if item.type == notification_type]


class HttpNotificationDispatcher(NotificationDispatcher):
    """Posts notifications to the platform notification service.

    Delivery runs as a background task; the caller only waits for the
    request to be scheduled.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if auth_token:
            self.headers["Authorization"] = f"Bearer {auth_token}"
        self._transport = transport
        self._pending: set[asyncio.Task] = set()

    async def send_notification(self, request: NotificationRequest) -> None:
        task = asyncio.create_task(self._deliver(request))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, request: NotificationRequest) -> None:
        url = f"{self.base_url}/notifications"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=request.model_dump(mode="json"), headers=self.headers)
                if response.status_code >= 400:
                    logger.error(
                        "Notification service error %s for type=%s recipient=%s: %s",
                        response.status_code,
                        request.type,
                        request.recipient,
                        response.text,
                    )
        except httpx.RequestError as e:
            logger.error("Network error delivering notification to '%s': %r", url, e)

    async def flush(self) -> None:
        """Wait for in-flight deliveries (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
