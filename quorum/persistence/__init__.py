"""Persistence layer for orchestration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import QuorumConfig, load_config
from .inmemory import InMemoryRepository
from .models import (
    Agent,
    Decision,
    DecisionStatus,
    Escalation,
    EventRecord,
    EventStatus,
    MachineContext,
    MachineInstance,
    MachineStatus,
    QueueItem,
    QueueStatus,
    ScheduledEvent,
    ScheduledWorkflow,
    StateDefinition,
    StateTransition,
    TriggerConfig,
    WorkflowDefinition,
)
from .repository import OrchestratorRepository
from .sqlite import SQLiteRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[QuorumConfig] = None
) -> OrchestratorRepository:
    """Factory function to obtain an orchestration repository.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via environment variable ``QUORUM_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("QUORUM_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from .postgres import PostgresRepository

        return PostgresRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Agent",
    "Decision",
    "DecisionStatus",
    "Escalation",
    "EventRecord",
    "EventStatus",
    "InMemoryRepository",
    "MachineContext",
    "MachineInstance",
    "MachineStatus",
    "OrchestratorRepository",
    "QueueItem",
    "QueueStatus",
    "SQLiteRepository",
    "ScheduledEvent",
    "ScheduledWorkflow",
    "StateDefinition",
    "StateTransition",
    "TriggerConfig",
    "WorkflowDefinition",
    "get_repository",
]
