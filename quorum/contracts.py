"""Message contracts exchanged over the orchestration bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageType:
    STATUS_REQUEST = "status_request"
    STATUS_RESPONSE = "status_response"
    TASK = "task"
    TASK_QUEUED = "task_queued"
    URGENT_TASK = "urgent_task"
    DECISION = "decision"
    VOTE = "vote"
    ALERT = "alert"
    BROADCAST = "broadcast"
    STATE_TASK = "state_task"
    STATE_ACK = "state_ack"

    ALL = frozenset(
        {
            STATUS_REQUEST,
            STATUS_RESPONSE,
            TASK,
            TASK_QUEUED,
            URGENT_TASK,
            DECISION,
            VOTE,
            ALERT,
            BROADCAST,
            STATE_TASK,
            STATE_ACK,
        }
    )


Priority = Literal["low", "normal", "high", "urgent"]


class AgentMessage(BaseModel):
    """Envelope exchanged over the bus.

    ``to`` is a concrete agent id, a role tier (``head``/``clevel``) or ``all``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    from_: str = Field(alias="from")
    to: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = "normal"
    timestamp: datetime = Field(default_factory=utcnow)
    requires_response: bool = Field(default=False, alias="requiresResponse")
    response_deadline: Optional[datetime] = Field(default=None, alias="responseDeadline")

    def to_json(self) -> str:
        """Serialize message to JSON using wire field names."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> "AgentMessage":
        return cls.model_validate_json(data)


class StateTaskMessage(BaseModel):
    """Work item sent to an agent executor for one machine state."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["state_task"] = "state_task"
    machine_id: str = Field(alias="machineId")
    state: str
    workflow_type: str = Field(alias="workflowType")
    context: Dict[str, Any] = Field(default_factory=dict)
    prompt: str
    required_output: List[str] = Field(default_factory=list, alias="requiredOutput")
    timeout: int
    attempt_number: int = Field(default=1, alias="attemptNumber")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StateAckMessage(BaseModel):
    """Outcome reported by an agent executor for a dispatched state."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["state_ack"] = "state_ack"
    machine_id: str = Field(alias="machineId")
    state: str
    success: bool
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    tokens_used: Optional[int] = Field(default=None, alias="tokensUsed")


class VotePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    decision_id: str = Field(alias="decisionId")
    voter_type: str = Field(alias="voterType")
    vote: Literal["approve", "veto", "abstain"]
    round: Optional[int] = None
    reason: Optional[str] = None


__all__ = [
    "AgentMessage",
    "MessageType",
    "Priority",
    "StateAckMessage",
    "StateTaskMessage",
    "VotePayload",
    "utcnow",
]
