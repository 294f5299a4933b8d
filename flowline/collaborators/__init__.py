"""External collaborators used by the engine."""

from .base import AgentRunner, EventSink, NotificationSink
from .inmemory import (
    CallableAgentRunner,
    InMemoryEventSink,
    InMemoryNotificationSink,
    LoggingEventSink,
    LoggingNotificationSink,
)

__all__ = [
    "AgentRunner",
    "EventSink",
    "NotificationSink",
    "CallableAgentRunner",
    "InMemoryEventSink",
    "InMemoryNotificationSink",
    "LoggingEventSink",
    "LoggingNotificationSink",
]
