"""In-process collaborators for tests and single-node deployments."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..models import EngineEvent, Notification
from .base import AgentRunner, EventSink, NotificationSink

logger = logging.getLogger(__name__)

AgentCallable = Callable[
    [Dict[str, Any], Dict[str, Any]], Union[Any, Awaitable[Any]]
]


class CallableAgentRunner(AgentRunner):
    """Dispatch agent identifiers to plain Python callables.

    Each callable receives ``(configuration, input)`` and returns the agent
    output. Sync and async callables are both accepted.
    """

    def __init__(self, agents: Optional[Dict[str, AgentCallable]] = None) -> None:
        self._agents: Dict[str, AgentCallable] = dict(agents or {})

    def register(self, identifier: str, agent: AgentCallable) -> None:
        self._agents[identifier] = agent

    async def execute(
        self, identifier: str, configuration: Dict[str, Any], input: Dict[str, Any]
    ) -> Dict[str, Any]:
        agent = self._agents.get(identifier)
        if agent is None:
            return {"error": f"Unknown agent '{identifier}'"}
        result = agent(configuration, input)
        if inspect.isawaitable(result):
            result = await result
        return {"output": result}


class InMemoryNotificationSink(NotificationSink):
    """Record notifications in a list."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def for_recipient(self, recipient: str) -> List[Notification]:
        return [n for n in self.notifications if n.recipient == recipient]


class InMemoryEventSink(EventSink):
    """Record emitted events in a list."""

    def __init__(self) -> None:
        self.events: List[EngineEvent] = []

    async def emit(self, event: EngineEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> List[EngineEvent]:
        return [e for e in self.events if e.name == name]


class LoggingNotificationSink(NotificationSink):
    async def notify(self, notification: Notification) -> None:
        logger.info(
            f"Notify {notification.recipient_type} {notification.recipient}: "
            f"[{notification.kind}] {notification.message}"
        )


class LoggingEventSink(EventSink):
    async def emit(self, event: EngineEvent) -> None:
        logger.info(f"Event {event.name} for run {event.run_id}: {event.payload}")
