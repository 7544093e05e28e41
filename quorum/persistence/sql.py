"""Shared table layout and row mapping for the SQL repositories.

Queries are written with ``?`` placeholders; dialects that use numbered
parameters rewrite them in ``_run``/``_query``. Timestamps are stored as
fixed-width UTC ISO strings so they compare correctly as text, and nested
structures are stored as JSON text.
"""

from __future__ import annotations

import abc
import json
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence, Type, TypeVar

from pydantic import BaseModel

from .models import (
    Agent,
    Decision,
    DecisionStatus,
    Escalation,
    EventRecord,
    EventStatus,
    MachineInstance,
    MachineStatus,
    QueueItem,
    ScheduledEvent,
    ScheduledWorkflow,
    StateTransition,
    WorkflowDefinition,
)
from .repository import OrchestratorRepository

ModelT = TypeVar("ModelT", bound=BaseModel)

SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL UNIQUE,
        agent_type TEXT NOT NULL,
        name TEXT,
        description TEXT,
        initial_state TEXT NOT NULL,
        states TEXT NOT NULL,
        trigger_type TEXT,
        trigger_config TEXT,
        version INTEGER,
        is_active INTEGER,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS machine_instances (
        id TEXT PRIMARY KEY,
        definition_id TEXT NOT NULL,
        definition_type TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        agent_id TEXT,
        current_state TEXT NOT NULL,
        previous_state TEXT,
        context TEXT,
        status TEXT NOT NULL,
        started_at TEXT,
        updated_at TEXT,
        completed_at TEXT,
        state_entered_at TEXT,
        state_timeout_at TEXT,
        github_issue INTEGER,
        github_repo TEXT,
        error_message TEXT,
        retry_count INTEGER,
        priority INTEGER,
        created_at TEXT,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS state_transitions (
        seq {serial},
        id TEXT NOT NULL UNIQUE,
        machine_id TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        success INTEGER,
        agent_output TEXT,
        error_message TEXT,
        error_code TEXT,
        duration_ms INTEGER,
        attempt_number INTEGER,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS queue_items (
        id TEXT PRIMARY KEY,
        machine_id TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        task_payload TEXT,
        status TEXT NOT NULL,
        created_at TEXT,
        sent_at TEXT,
        acknowledged_at TEXT,
        timeout_at TEXT,
        retry_count INTEGER,
        max_retries INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_workflows (
        id TEXT PRIMARY KEY,
        definition_type TEXT NOT NULL,
        cron_expression TEXT NOT NULL,
        timezone TEXT,
        is_active INTEGER,
        last_run_at TEXT,
        last_machine_id TEXT,
        last_status TEXT,
        next_run_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        name TEXT,
        tier TEXT,
        active INTEGER,
        loop_interval INTEGER,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS decisions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        proposed_by TEXT NOT NULL,
        tier TEXT NOT NULL,
        status TEXT NOT NULL,
        ceo_vote TEXT,
        dao_vote TEXT,
        clevel_votes TEXT,
        veto_round INTEGER,
        human_decision TEXT,
        deadline_at TEXT,
        created_at TEXT,
        resolved_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS escalations (
        id TEXT PRIMARY KEY,
        decision_id TEXT,
        reason TEXT NOT NULL,
        channels_notified TEXT,
        human_response TEXT,
        responded_at TEXT,
        status TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_events (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        event_type TEXT NOT NULL,
        scheduled_at TEXT NOT NULL,
        duration_minutes INTEGER,
        agent TEXT NOT NULL,
        platform TEXT,
        content TEXT,
        media_urls TEXT,
        status TEXT NOT NULL,
        executed_at TEXT,
        execution_result TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        seq {serial},
        id TEXT NOT NULL UNIQUE,
        event_type TEXT NOT NULL,
        source TEXT NOT NULL,
        target TEXT,
        payload TEXT,
        correlation_id TEXT,
        created_at TEXT
    )
    """,
)

JSON_COLUMNS = frozenset(
    {
        "states",
        "trigger_config",
        "context",
        "agent_output",
        "task_payload",
        "clevel_votes",
        "channels_notified",
        "media_urls",
        "execution_result",
        "payload",
    }
)


def to_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_value(value: Any) -> Any:
    """Convert a model value to a column value."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, datetime):
        return to_timestamp(value)
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"))
    return json.dumps(value, default=_json_default)


def encode_model(model: BaseModel) -> dict[str, Any]:
    return {name: encode_value(getattr(model, name)) for name in type(model).model_fields}


def decode_row(model_cls: Type[ModelT], row: dict[str, Any]) -> ModelT:
    data = dict(row)
    data.pop("seq", None)
    for column in JSON_COLUMNS.intersection(data):
        if isinstance(data[column], str):
            data[column] = json.loads(data[column])
    for column, value in list(data.items()):
        if value is None:
            del data[column]
    return model_cls.model_validate(data)


class SQLRepository(OrchestratorRepository, metaclass=abc.ABCMeta):
    """Repository methods shared by the relational backends."""

    @abc.abstractmethod
    async def _run(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a write and return the affected row count."""

    @abc.abstractmethod
    async def _query(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute a read and return rows as dicts."""

    # ------------------------------------------------------------------
    # Generic helpers
    async def _insert(self, table: str, model: BaseModel) -> None:
        row = encode_model(model)
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        await self._run(f"INSERT INTO {table} ({columns}) VALUES ({marks})", tuple(row.values()))

    async def _upsert(self, table: str, model: BaseModel, key: str) -> None:
        row = encode_model(model)
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        updates = ", ".join(f"{c} = excluded.{c}" for c in row if c not in (key, "id"))
        await self._run(
            f"INSERT INTO {table} ({columns}) VALUES ({marks}) "
            f"ON CONFLICT ({key}) DO UPDATE SET {updates}",
            tuple(row.values()),
        )

    async def _update(
        self,
        table: str,
        row_id: str,
        changes: dict[str, Any],
        extra_set: str = "",
        extra_where: str = "",
        extra_params: Sequence[Any] = (),
    ) -> int:
        assignments = [f"{column} = ?" for column in changes]
        if extra_set:
            assignments.append(extra_set)
        if not assignments:
            return 0
        params = [encode_value(v) for v in changes.values()] + [row_id, *extra_params]
        return await self._run(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?{extra_where}",
            params,
        )

    async def _select(
        self,
        model_cls: Type[ModelT],
        table: str,
        where: str = "",
        params: Sequence[Any] = (),
        order: str = "",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ModelT]:
        query = f"SELECT * FROM {table}"
        if where:
            query += f" WHERE {where}"
        if order:
            query += f" ORDER BY {order}"
        params = list(params)
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        rows = await self._query(query, params)
        return [decode_row(model_cls, r) for r in rows]

    async def _get(self, model_cls: Type[ModelT], table: str, row_id: str) -> ModelT | None:
        rows = await self._select(model_cls, table, "id = ?", (row_id,))
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._upsert("workflow_definitions", definition, "type")

    async def get_definition(
        self, definition_type: str, active_only: bool = True
    ) -> WorkflowDefinition | None:
        where = "type = ?" + (" AND is_active = 1" if active_only else "")
        rows = await self._select(WorkflowDefinition, "workflow_definitions", where, (definition_type,))
        return rows[0] if rows else None

    async def list_definitions(self, active_only: bool = True) -> list[WorkflowDefinition]:
        where = "is_active = 1" if active_only else ""
        return await self._select(WorkflowDefinition, "workflow_definitions", where, order="type")

    # ------------------------------------------------------------------
    # Machine instances
    async def create_machine(self, machine: MachineInstance) -> None:
        await self._insert("machine_instances", machine)

    async def get_machine(self, machine_id: str) -> MachineInstance | None:
        return await self._get(MachineInstance, "machine_instances", machine_id)

    async def update_machine(
        self,
        machine_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> bool:
        changes = {k: v for k, v in changes.items() if k != "version"}
        if expected_version is None:
            count = await self._update(
                "machine_instances", machine_id, changes, extra_set="version = version + 1"
            )
        else:
            count = await self._update(
                "machine_instances",
                machine_id,
                changes,
                extra_set="version = version + 1",
                extra_where=" AND version = ?",
                extra_params=(expected_version,),
            )
        return count > 0

    async def list_machines(
        self,
        agent_type: str | None = None,
        statuses: Iterable[str] | None = None,
        definition_type: str | None = None,
        github_issue: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MachineInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        if agent_type is not None:
            clauses.append("agent_type = ?")
            params.append(agent_type)
        status_list = list(statuses or [])
        if status_list:
            clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        if definition_type is not None:
            clauses.append("definition_type = ?")
            params.append(definition_type)
        if github_issue is not None:
            clauses.append("github_issue = ?")
            params.append(github_issue)
        return await self._select(
            MachineInstance,
            "machine_instances",
            " AND ".join(clauses),
            params,
            order="priority ASC, created_at ASC",
            limit=limit,
            offset=offset,
        )

    async def find_timed_out_machines(self, now: datetime) -> list[MachineInstance]:
        return await self._select(
            MachineInstance,
            "machine_instances",
            "status = ? AND state_timeout_at IS NOT NULL AND state_timeout_at < ?",
            (MachineStatus.RUNNING, to_timestamp(now)),
            order="priority ASC, created_at ASC",
        )

    # ------------------------------------------------------------------
    # Transitions
    async def add_transition(self, transition: StateTransition) -> None:
        await self._insert("state_transitions", transition)

    async def list_transitions(self, machine_id: str | None = None) -> list[StateTransition]:
        if machine_id is None:
            return await self._select(StateTransition, "state_transitions", order="seq")
        return await self._select(
            StateTransition, "state_transitions", "machine_id = ?", (machine_id,), order="seq"
        )

    # ------------------------------------------------------------------
    # Task queue
    async def add_queue_item(self, item: QueueItem) -> None:
        await self._insert("queue_items", item)

    async def list_queue_items(self, machine_id: str) -> list[QueueItem]:
        return await self._select(
            QueueItem, "queue_items", "machine_id = ?", (machine_id,), order="created_at"
        )

    async def update_queue_items(
        self, machine_id: str, from_status: str, changes: dict[str, Any]
    ) -> int:
        assignments = ", ".join(f"{c} = ?" for c in changes)
        params = [encode_value(v) for v in changes.values()] + [machine_id, from_status]
        return await self._run(
            f"UPDATE queue_items SET {assignments} WHERE machine_id = ? AND status = ?",
            params,
        )

    # ------------------------------------------------------------------
    # Scheduled workflows
    async def save_schedule(self, schedule: ScheduledWorkflow) -> None:
        await self._upsert("scheduled_workflows", schedule, "id")

    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> None:
        await self._update("scheduled_workflows", schedule_id, changes)

    async def list_schedules(self, active_only: bool = False) -> list[ScheduledWorkflow]:
        where = "is_active = 1" if active_only else ""
        return await self._select(ScheduledWorkflow, "scheduled_workflows", where)

    async def find_due_schedules(self, now: datetime) -> list[ScheduledWorkflow]:
        return await self._select(
            ScheduledWorkflow,
            "scheduled_workflows",
            "is_active = 1 AND next_run_at IS NOT NULL AND next_run_at <= ?",
            (to_timestamp(now),),
            order="next_run_at",
        )

    # ------------------------------------------------------------------
    # Agents
    async def save_agent(self, agent: Agent) -> None:
        await self._upsert("agents", agent, "id")

    async def get_agent(self, agent_id: str) -> Agent | None:
        return await self._get(Agent, "agents", agent_id)

    async def find_agent_by_role(self, role: str) -> Agent | None:
        rows = await self._select(
            Agent, "agents", "role = ? AND active = 1", (role,), order="created_at", limit=1
        )
        return rows[0] if rows else None

    async def list_agents(self, active_only: bool = False) -> list[Agent]:
        where = "active = 1" if active_only else ""
        return await self._select(Agent, "agents", where, order="created_at")

    # ------------------------------------------------------------------
    # Decisions
    async def create_decision(self, decision: Decision) -> None:
        await self._insert("decisions", decision)

    async def get_decision(self, decision_id: str) -> Decision | None:
        return await self._get(Decision, "decisions", decision_id)

    async def update_decision(self, decision_id: str, changes: dict[str, Any]) -> None:
        await self._update("decisions", decision_id, changes)

    async def list_decisions(self, status: str | None = None) -> list[Decision]:
        if status is None:
            return await self._select(Decision, "decisions", order="created_at")
        return await self._select(Decision, "decisions", "status = ?", (status,), order="created_at")

    async def find_expired_decisions(self, now: datetime) -> list[Decision]:
        return await self._select(
            Decision,
            "decisions",
            "status = ? AND deadline_at IS NOT NULL AND deadline_at < ?",
            (DecisionStatus.PENDING, to_timestamp(now)),
            order="deadline_at",
        )

    # ------------------------------------------------------------------
    # Escalations
    async def create_escalation(self, escalation: Escalation) -> None:
        await self._insert("escalations", escalation)

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        return await self._get(Escalation, "escalations", escalation_id)

    async def update_escalation(self, escalation_id: str, changes: dict[str, Any]) -> None:
        await self._update("escalations", escalation_id, changes)

    async def list_escalations(
        self, status: str | None = None, decision_id: str | None = None
    ) -> list[Escalation]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if decision_id is not None:
            clauses.append("decision_id = ?")
            params.append(decision_id)
        return await self._select(
            Escalation, "escalations", " AND ".join(clauses), params, order="created_at"
        )

    # ------------------------------------------------------------------
    # Calendar events
    async def create_scheduled_event(self, event: ScheduledEvent) -> None:
        await self._insert("scheduled_events", event)

    async def get_scheduled_event(self, event_id: str) -> ScheduledEvent | None:
        return await self._get(ScheduledEvent, "scheduled_events", event_id)

    async def update_scheduled_event(self, event_id: str, changes: dict[str, Any]) -> None:
        await self._update("scheduled_events", event_id, changes)

    async def find_due_events(self, now: datetime, limit: int = 10) -> list[ScheduledEvent]:
        return await self._select(
            ScheduledEvent,
            "scheduled_events",
            "status = ? AND scheduled_at <= ?",
            (EventStatus.SCHEDULED, to_timestamp(now)),
            order="scheduled_at",
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Event log
    async def log_event(self, record: EventRecord) -> None:
        await self._insert("events", record)

    async def list_events(
        self, event_type: str | None = None, limit: int = 100
    ) -> list[EventRecord]:
        if event_type is None:
            rows = await self._select(EventRecord, "events", order="seq DESC", limit=limit)
        else:
            rows = await self._select(
                EventRecord, "events", "event_type = ?", (event_type,), order="seq DESC", limit=limit
            )
        return list(reversed(rows))

    async def ping(self) -> bool:
        rows = await self._query("SELECT 1 AS ok")
        return bool(rows)
