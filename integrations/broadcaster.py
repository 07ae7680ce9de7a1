"""Real-time broadcaster for execution events.

Subscribers are plain callables (sync or async). A failing subscriber is
logged and skipped; it never affects engine state.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from shared.workflow_contracts import WorkflowEvent

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[WorkflowEvent], Any]


class RealtimeBroadcaster:
    def __init__(self) -> None:
        self._subscribers: list[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        """Register a subscriber and return a callable that removes it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    async def broadcast(self, event: WorkflowEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                maybe_result = subscriber(event)
                if inspect.isawaitable(maybe_result):
                    await maybe_result
            except Exception as exc:
                logger.warning("Failed to broadcast '%s' for %s: %s", event.event_type, event.execution_id, exc)
