from datetime import datetime, timedelta, timezone

import pytest

from quorum.bus import MessageBus
from quorum.machine import StateMachineEngine
from quorum.persistence import InMemoryRepository, WorkflowDefinition
from quorum.transports.inmemory import InMemoryTransport


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def bus(transport, repository) -> MessageBus:
    return MessageBus(transport, repository)


@pytest.fixture
def engine(repository, bus, clock) -> StateMachineEngine:
    engine = StateMachineEngine(repository, bus, clock=clock)
    engine.attach()
    return engine


@pytest.fixture
def linear_definition() -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "type": "linear",
            "agentType": "cto",
            "initialState": "plan",
            "states": [
                {
                    "name": "plan",
                    "agentPrompt": "Plan the work for {projectName}",
                    "requiredOutput": ["summary"],
                    "onSuccess": "build",
                },
                {
                    "name": "build",
                    "agentPrompt": "Build it: {summary}",
                    "requiredOutput": ["prUrl"],
                },
            ],
        }
    )
