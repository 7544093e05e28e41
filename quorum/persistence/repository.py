"""Repository abstraction for orchestration state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from .models import (
    Agent,
    Decision,
    Escalation,
    EventRecord,
    MachineInstance,
    QueueItem,
    ScheduledEvent,
    ScheduledWorkflow,
    StateTransition,
    WorkflowDefinition,
)


class OrchestratorRepository(Protocol):
    """Protocol for orchestration persistence backends.

    Updates are targeted column updates keyed by id. ``update_machine``
    bumps the row version and, when ``expected_version`` is given, writes
    nothing and returns ``False`` if the stored version differs.
    """

    # Workflow definitions -------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace the definition with the same type."""

    async def get_definition(
        self, definition_type: str, active_only: bool = True
    ) -> WorkflowDefinition | None:
        """Return the definition for ``definition_type``."""

    async def list_definitions(self, active_only: bool = True) -> list[WorkflowDefinition]:
        """Return all (active) definitions."""

    # Machine instances ----------------------------------------------------
    async def create_machine(self, machine: MachineInstance) -> None:
        """Persist a new machine instance."""

    async def get_machine(self, machine_id: str) -> MachineInstance | None:
        """Return the machine instance by id."""

    async def update_machine(
        self,
        machine_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> bool:
        """Apply column changes to a machine row."""

    async def list_machines(
        self,
        agent_type: str | None = None,
        statuses: Iterable[str] | None = None,
        definition_type: str | None = None,
        github_issue: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MachineInstance]:
        """Return machines ordered by priority then creation time."""

    async def find_timed_out_machines(self, now: datetime) -> list[MachineInstance]:
        """Return running machines whose state deadline has passed."""

    # Transitions ----------------------------------------------------------
    async def add_transition(self, transition: StateTransition) -> None:
        """Append an audit row."""

    async def list_transitions(self, machine_id: str | None = None) -> list[StateTransition]:
        """Return audit rows in creation order."""

    # Task queue -----------------------------------------------------------
    async def add_queue_item(self, item: QueueItem) -> None:
        """Record a task handed to an agent."""

    async def list_queue_items(self, machine_id: str) -> list[QueueItem]:
        """Return queue items for a machine."""

    async def update_queue_items(
        self, machine_id: str, from_status: str, changes: dict[str, Any]
    ) -> int:
        """Update queue items of a machine still in ``from_status``."""

    # Scheduled workflows --------------------------------------------------
    async def save_schedule(self, schedule: ScheduledWorkflow) -> None:
        """Persist a workflow schedule."""

    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> None:
        """Apply column changes to a schedule."""

    async def list_schedules(self, active_only: bool = False) -> list[ScheduledWorkflow]:
        """Return workflow schedules."""

    async def find_due_schedules(self, now: datetime) -> list[ScheduledWorkflow]:
        """Return active schedules whose next run is due."""

    # Agents ---------------------------------------------------------------
    async def save_agent(self, agent: Agent) -> None:
        """Insert or replace an agent."""

    async def get_agent(self, agent_id: str) -> Agent | None:
        """Return the agent by id."""

    async def find_agent_by_role(self, role: str) -> Agent | None:
        """Return the first active agent with ``role``."""

    async def list_agents(self, active_only: bool = False) -> list[Agent]:
        """Return registered agents."""

    # Decisions ------------------------------------------------------------
    async def create_decision(self, decision: Decision) -> None:
        """Persist a new decision."""

    async def get_decision(self, decision_id: str) -> Decision | None:
        """Return the decision by id."""

    async def update_decision(self, decision_id: str, changes: dict[str, Any]) -> None:
        """Apply column changes to a decision."""

    async def list_decisions(self, status: str | None = None) -> list[Decision]:
        """Return decisions, optionally filtered by status."""

    async def find_expired_decisions(self, now: datetime) -> list[Decision]:
        """Return pending decisions whose deadline has passed."""

    # Escalations ----------------------------------------------------------
    async def create_escalation(self, escalation: Escalation) -> None:
        """Persist a new escalation."""

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        """Return the escalation by id."""

    async def update_escalation(self, escalation_id: str, changes: dict[str, Any]) -> None:
        """Apply column changes to an escalation."""

    async def list_escalations(
        self, status: str | None = None, decision_id: str | None = None
    ) -> list[Escalation]:
        """Return escalations."""

    # Calendar events ------------------------------------------------------
    async def create_scheduled_event(self, event: ScheduledEvent) -> None:
        """Persist a calendar event."""

    async def get_scheduled_event(self, event_id: str) -> ScheduledEvent | None:
        """Return the calendar event by id."""

    async def update_scheduled_event(self, event_id: str, changes: dict[str, Any]) -> None:
        """Apply column changes to a calendar event."""

    async def find_due_events(self, now: datetime, limit: int = 10) -> list[ScheduledEvent]:
        """Return undispatched events whose scheduled time has passed."""

    # Event log ------------------------------------------------------------
    async def log_event(self, record: EventRecord) -> None:
        """Append an event log row."""

    async def list_events(
        self, event_type: str | None = None, limit: int = 100
    ) -> list[EventRecord]:
        """Return the most recent event log rows, oldest first."""

    async def ping(self) -> bool:
        """Return ``True`` when the storage backend is reachable."""
