"""Data models for persisted orchestration state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import DEFAULT_MAX_RETRIES, DEFAULT_PRIORITY, DEFAULT_STATE_TIMEOUT_MS
from ..contracts import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class MachineStatus:
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = frozenset({PENDING, RUNNING, PAUSED, COMPLETED, FAILED, CANCELLED})
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


class QueueStatus:
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    TIMEOUT = "timeout"


class DecisionStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    VETOED = "vetoed"
    ESCALATED = "escalated"

    RESOLVED = frozenset({APPROVED, REJECTED, VETOED})


class EventStatus:
    SCHEDULED = "scheduled"
    DISPATCHED = "dispatched"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Workflow definitions
# ---------------------------------------------------------------------------


class StateDefinition(BaseModel):
    """One step of a workflow: prompt, routing and retry policy."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    agent_prompt: str = Field(default="", alias="agentPrompt")
    required_output: List[str] = Field(default_factory=list, alias="requiredOutput")
    on_success: Optional[str] = Field(default=None, alias="onSuccess")
    on_failure: Optional[str] = Field(default=None, alias="onFailure")
    timeout: int = DEFAULT_STATE_TIMEOUT_MS
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, alias="maxRetries")
    skip_if: Optional[str] = Field(default=None, alias="skipIf")


class TriggerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    labels: List[str] = Field(default_factory=list)
    cron: Optional[str] = None
    timezone: Optional[str] = None
    event_type: Optional[str] = Field(default=None, alias="eventType")


class WorkflowDefinition(BaseModel):
    """Named state graph that machine instances execute."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    type: str
    agent_type: str = Field(alias="agentType")
    name: str = ""
    description: str = ""
    initial_state: str = Field(alias="initialState")
    states: List[StateDefinition]
    trigger_type: Literal["manual", "issue_assigned", "scheduled", "event"] = Field(
        default="manual", alias="triggerType"
    )
    trigger_config: TriggerConfig = Field(
        default_factory=TriggerConfig, alias="triggerConfig"
    )
    version: int = 1
    is_active: bool = Field(default=True, alias="isActive")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_state(self, name: Optional[str]) -> Optional[StateDefinition]:
        if name is None:
            return None
        for state in self.states:
            if state.name == name:
                return state
        return None

    @property
    def state_names(self) -> List[str]:
        return [s.name for s in self.states]

    def graph_errors(self) -> List[str]:
        """Return every broken reference in the state graph."""
        errors: List[str] = []
        names = self.state_names
        if len(set(names)) != len(names):
            errors.append("state names must be unique")
        if self.initial_state not in names:
            errors.append(f"initial state '{self.initial_state}' is not defined")
        for state in self.states:
            for label, target in (("onSuccess", state.on_success), ("onFailure", state.on_failure)):
                if target is not None and target not in names:
                    errors.append(f"state '{state.name}' {label} references unknown state '{target}'")
        return errors


# ---------------------------------------------------------------------------
# Machine instances and audit log
# ---------------------------------------------------------------------------


class MachineContext(BaseModel):
    """Mutable key/value bag carried through a machine run.

    Well-known keys are typed; anything else an agent returns is kept as an
    extra field.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    retry_count: int = Field(default=0, alias="retryCount")
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, alias="maxRetries")
    project_name: Optional[str] = Field(default=None, alias="projectName")
    project_path: Optional[str] = Field(default=None, alias="projectPath")
    github_issue: Optional[int] = Field(default=None, alias="githubIssue")
    github_repo: Optional[str] = Field(default=None, alias="githubRepo")
    needs_spec: Optional[bool] = Field(default=None, alias="needsSpec")
    spec_path: Optional[str] = Field(default=None, alias="specPath")
    summary: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def merged(self, values: Dict[str, Any]) -> "MachineContext":
        return MachineContext.model_validate({**self.as_dict(), **values})


class MachineInstance(BaseModel):
    """One execution of a workflow definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_type: str
    agent_type: str
    agent_id: Optional[str] = None
    current_state: str
    previous_state: Optional[str] = None
    context: MachineContext = Field(default_factory=MachineContext)
    status: str = MachineStatus.PENDING
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    state_entered_at: datetime = Field(default_factory=utcnow)
    state_timeout_at: Optional[datetime] = None
    github_issue: Optional[int] = None
    github_repo: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    priority: int = DEFAULT_PRIORITY
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in MachineStatus.TERMINAL


class StateTransition(BaseModel):
    """Append-only audit record of a state change."""

    id: str = Field(default_factory=new_id)
    machine_id: str
    from_state: Optional[str] = None
    to_state: str
    success: bool = True
    agent_output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: Optional[int] = None
    attempt_number: int = 1
    created_at: datetime = Field(default_factory=utcnow)


class QueueItem(BaseModel):
    """Task handed to an agent, tracked until acknowledged or timed out."""

    id: str = Field(default_factory=new_id)
    machine_id: str
    agent_type: str
    task_payload: Dict[str, Any] = Field(default_factory=dict)
    status: str = QueueStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES


class ScheduledWorkflow(BaseModel):
    """Cron registration that periodically starts a workflow."""

    id: str = Field(default_factory=new_id)
    definition_type: str
    cron_expression: str
    timezone: str = "UTC"
    is_active: bool = True
    last_run_at: Optional[datetime] = None
    last_machine_id: Optional[str] = None
    last_status: Optional[str] = None
    next_run_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Agents and governance
# ---------------------------------------------------------------------------


class Agent(BaseModel):
    id: str = Field(default_factory=new_id)
    role: str
    name: str = ""
    tier: Literal["head", "clevel"] = "clevel"
    active: bool = True
    loop_interval: int = 3600
    created_at: datetime = Field(default_factory=utcnow)


class Decision(BaseModel):
    """Governance proposal under CEO/DAO vote."""

    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    proposed_by: str
    tier: Literal["operational", "minor", "major", "critical"] = "major"
    status: str = DecisionStatus.PENDING
    ceo_vote: Optional[str] = None
    dao_vote: Optional[str] = None
    clevel_votes: Dict[str, str] = Field(default_factory=dict)
    veto_round: int = 0
    human_decision: Optional[str] = None
    deadline_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def active_round(self) -> int:
        return self.veto_round + 1


class Escalation(BaseModel):
    """Request for a human to resolve what automation could not."""

    id: str = Field(default_factory=new_id)
    decision_id: Optional[str] = None
    reason: str
    channels_notified: List[str] = Field(default_factory=list)
    human_response: Optional[str] = None
    responded_at: Optional[datetime] = None
    status: Literal["pending", "responded"] = "pending"
    created_at: datetime = Field(default_factory=utcnow)


class ScheduledEvent(BaseModel):
    """Calendar item dispatched to an agent once its time arrives."""

    id: str = Field(default_factory=new_id)
    project_id: Optional[str] = None
    title: str
    description: str = ""
    event_type: Literal[
        "post", "ama", "release", "milestone", "meeting", "deadline", "other"
    ] = "other"
    scheduled_at: datetime
    duration_minutes: Optional[int] = None
    agent: str
    platform: Optional[str] = None
    content: Optional[str] = None
    media_urls: List[str] = Field(default_factory=list)
    status: str = EventStatus.SCHEDULED
    executed_at: Optional[datetime] = None
    execution_result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class EventRecord(BaseModel):
    """Append-only log of bus traffic and orchestrator activity."""

    id: str = Field(default_factory=new_id)
    event_type: str
    source: str
    target: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "Agent",
    "Decision",
    "DecisionStatus",
    "Escalation",
    "EventRecord",
    "EventStatus",
    "MachineContext",
    "MachineInstance",
    "MachineStatus",
    "QueueItem",
    "QueueStatus",
    "ScheduledEvent",
    "ScheduledWorkflow",
    "StateDefinition",
    "StateTransition",
    "TriggerConfig",
    "WorkflowDefinition",
    "new_id",
]
