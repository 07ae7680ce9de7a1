"""External collaborators consumed by the workflow engine."""

from integrations.broadcaster import RealtimeBroadcaster
from integrations.http_client import OutboundHttpClient
from integrations.notifications import (
    HttpNotificationDispatcher,
    InMemoryNotificationDispatcher,
    NotificationDispatcher,
)
from integrations.task_store import InMemoryTaskStore, SQLiteTaskStore, TaskStore

__all__ = [
    "HttpNotificationDispatcher",
    "InMemoryNotificationDispatcher",
    "InMemoryTaskStore",
    "NotificationDispatcher",
    "OutboundHttpClient",
    "RealtimeBroadcaster",
    "SQLiteTaskStore",
    "TaskStore",
]
