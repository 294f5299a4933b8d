from datetime import datetime, timedelta, timezone

import pytest

from flowline.collaborators import (
    CallableAgentRunner,
    InMemoryEventSink,
    InMemoryNotificationSink,
)
from flowline.engine import WorkflowEngine
from flowline.persistence import InMemoryWorkflowRepository


class FakeClock:
    """Manually advanced clock for timer-driven behaviour."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def agents() -> CallableAgentRunner:
    return CallableAgentRunner()


@pytest.fixture
def notifications() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def engine(repository, agents, notifications, events, clock) -> WorkflowEngine:
    return WorkflowEngine(
        repository, agents, notifications, events, clock=clock, secrets={}
    )
