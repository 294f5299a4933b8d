"""Interfaces for the engine's external collaborators."""

from __future__ import annotations

import abc
from typing import Any, Dict

from ..models import EngineEvent, Notification


class AgentRunner(metaclass=abc.ABCMeta):
    """Executes an automated agent on behalf of an ``agent_execution`` step."""

    @abc.abstractmethod
    async def execute(
        self, identifier: str, configuration: Dict[str, Any], input: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Run the agent and return ``{"output": ...}`` or ``{"error": ...}``.

        Raising an exception is treated the same as returning an error.
        """
        raise NotImplementedError


class NotificationSink(metaclass=abc.ABCMeta):
    """Delivers notifications to users or roles."""

    @abc.abstractmethod
    async def notify(self, notification: Notification) -> None:
        raise NotImplementedError


class EventSink(metaclass=abc.ABCMeta):
    """Receives named engine events such as escalations."""

    @abc.abstractmethod
    async def emit(self, event: EngineEvent) -> None:
        raise NotImplementedError
