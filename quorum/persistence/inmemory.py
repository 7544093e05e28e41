"""In-memory implementation of the orchestration repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, TypeVar

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


def _copy(model: ModelT) -> ModelT:
    return model.model_copy(deep=True)


def _apply(model: ModelT, changes: Dict[str, Any]) -> ModelT:
    return model.model_copy(update=changes, deep=True)


class InMemoryRepository(OrchestratorRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Models are copied in and out so
    callers never alias stored rows.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._machines: Dict[str, MachineInstance] = {}
        self._transitions: List[StateTransition] = []
        self._queue: Dict[str, QueueItem] = {}
        self._schedules: Dict[str, ScheduledWorkflow] = {}
        self._agents: Dict[str, Agent] = {}
        self._decisions: Dict[str, Decision] = {}
        self._escalations: Dict[str, Escalation] = {}
        self._scheduled_events: Dict[str, ScheduledEvent] = {}
        self._events: List[EventRecord] = []

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.type] = _copy(definition)

    async def get_definition(
        self, definition_type: str, active_only: bool = True
    ) -> WorkflowDefinition | None:
        definition = self._definitions.get(definition_type)
        if definition is None or (active_only and not definition.is_active):
            return None
        return _copy(definition)

    async def list_definitions(self, active_only: bool = True) -> list[WorkflowDefinition]:
        return [
            _copy(d)
            for d in self._definitions.values()
            if d.is_active or not active_only
        ]

    # ------------------------------------------------------------------
    async def create_machine(self, machine: MachineInstance) -> None:
        self._machines[machine.id] = _copy(machine)

    async def get_machine(self, machine_id: str) -> MachineInstance | None:
        machine = self._machines.get(machine_id)
        return _copy(machine) if machine else None

    async def update_machine(
        self,
        machine_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> bool:
        machine = self._machines.get(machine_id)
        if machine is None:
            return False
        if expected_version is not None and machine.version != expected_version:
            return False
        changes = {**changes, "version": machine.version + 1}
        self._machines[machine_id] = _apply(machine, changes)
        return True

    async def list_machines(
        self,
        agent_type: str | None = None,
        statuses: Iterable[str] | None = None,
        definition_type: str | None = None,
        github_issue: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MachineInstance]:
        wanted = set(statuses) if statuses else None
        machines = [
            m
            for m in self._machines.values()
            if (agent_type is None or m.agent_type == agent_type)
            and (wanted is None or m.status in wanted)
            and (definition_type is None or m.definition_type == definition_type)
            and (github_issue is None or m.github_issue == github_issue)
        ]
        machines.sort(key=lambda m: (m.priority, m.created_at))
        machines = machines[offset:]
        if limit is not None:
            machines = machines[:limit]
        return [_copy(m) for m in machines]

    async def find_timed_out_machines(self, now: datetime) -> list[MachineInstance]:
        return [
            _copy(m)
            for m in self._machines.values()
            if m.status == MachineStatus.RUNNING
            and m.state_timeout_at is not None
            and m.state_timeout_at < now
        ]

    # ------------------------------------------------------------------
    async def add_transition(self, transition: StateTransition) -> None:
        self._transitions.append(_copy(transition))

    async def list_transitions(self, machine_id: str | None = None) -> list[StateTransition]:
        return [
            _copy(t)
            for t in self._transitions
            if machine_id is None or t.machine_id == machine_id
        ]

    # ------------------------------------------------------------------
    async def add_queue_item(self, item: QueueItem) -> None:
        self._queue[item.id] = _copy(item)

    async def list_queue_items(self, machine_id: str) -> list[QueueItem]:
        return [_copy(q) for q in self._queue.values() if q.machine_id == machine_id]

    async def update_queue_items(
        self, machine_id: str, from_status: str, changes: dict[str, Any]
    ) -> int:
        updated = 0
        for item_id, item in list(self._queue.items()):
            if item.machine_id == machine_id and item.status == from_status:
                self._queue[item_id] = _apply(item, changes)
                updated += 1
        return updated

    # ------------------------------------------------------------------
    async def save_schedule(self, schedule: ScheduledWorkflow) -> None:
        self._schedules[schedule.id] = _copy(schedule)

    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> None:
        schedule = self._schedules.get(schedule_id)
        if schedule:
            self._schedules[schedule_id] = _apply(schedule, changes)

    async def list_schedules(self, active_only: bool = False) -> list[ScheduledWorkflow]:
        return [
            _copy(s) for s in self._schedules.values() if s.is_active or not active_only
        ]

    async def find_due_schedules(self, now: datetime) -> list[ScheduledWorkflow]:
        return [
            _copy(s)
            for s in self._schedules.values()
            if s.is_active and s.next_run_at is not None and s.next_run_at <= now
        ]

    # ------------------------------------------------------------------
    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = _copy(agent)

    async def get_agent(self, agent_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        return _copy(agent) if agent else None

    async def find_agent_by_role(self, role: str) -> Agent | None:
        for agent in self._agents.values():
            if agent.role == role and agent.active:
                return _copy(agent)
        return None

    async def list_agents(self, active_only: bool = False) -> list[Agent]:
        return [_copy(a) for a in self._agents.values() if a.active or not active_only]

    # ------------------------------------------------------------------
    async def create_decision(self, decision: Decision) -> None:
        self._decisions[decision.id] = _copy(decision)

    async def get_decision(self, decision_id: str) -> Decision | None:
        decision = self._decisions.get(decision_id)
        return _copy(decision) if decision else None

    async def update_decision(self, decision_id: str, changes: dict[str, Any]) -> None:
        decision = self._decisions.get(decision_id)
        if decision:
            self._decisions[decision_id] = _apply(decision, changes)

    async def list_decisions(self, status: str | None = None) -> list[Decision]:
        return [
            _copy(d)
            for d in self._decisions.values()
            if status is None or d.status == status
        ]

    async def find_expired_decisions(self, now: datetime) -> list[Decision]:
        return [
            _copy(d)
            for d in self._decisions.values()
            if d.status == DecisionStatus.PENDING
            and d.deadline_at is not None
            and d.deadline_at < now
        ]

    # ------------------------------------------------------------------
    async def create_escalation(self, escalation: Escalation) -> None:
        self._escalations[escalation.id] = _copy(escalation)

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        escalation = self._escalations.get(escalation_id)
        return _copy(escalation) if escalation else None

    async def update_escalation(self, escalation_id: str, changes: dict[str, Any]) -> None:
        escalation = self._escalations.get(escalation_id)
        if escalation:
            self._escalations[escalation_id] = _apply(escalation, changes)

    async def list_escalations(
        self, status: str | None = None, decision_id: str | None = None
    ) -> list[Escalation]:
        return [
            _copy(e)
            for e in self._escalations.values()
            if (status is None or e.status == status)
            and (decision_id is None or e.decision_id == decision_id)
        ]

    # ------------------------------------------------------------------
    async def create_scheduled_event(self, event: ScheduledEvent) -> None:
        self._scheduled_events[event.id] = _copy(event)

    async def get_scheduled_event(self, event_id: str) -> ScheduledEvent | None:
        event = self._scheduled_events.get(event_id)
        return _copy(event) if event else None

    async def update_scheduled_event(self, event_id: str, changes: dict[str, Any]) -> None:
        event = self._scheduled_events.get(event_id)
        if event:
            self._scheduled_events[event_id] = _apply(event, changes)

    async def find_due_events(self, now: datetime, limit: int = 10) -> list[ScheduledEvent]:
        due = [
            e
            for e in self._scheduled_events.values()
            if e.status == EventStatus.SCHEDULED and e.scheduled_at <= now
        ]
        due.sort(key=lambda e: e.scheduled_at)
        return [_copy(e) for e in due[:limit]]

    # ------------------------------------------------------------------
    async def log_event(self, record: EventRecord) -> None:
        self._events.append(_copy(record))

    async def list_events(
        self, event_type: str | None = None, limit: int = 100
    ) -> list[EventRecord]:
        events = [e for e in self._events if event_type is None or e.event_type == event_type]
        return [_copy(e) for e in events[-limit:]]

    async def ping(self) -> bool:
        return True
