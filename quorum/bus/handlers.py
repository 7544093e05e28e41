"""Built-in handlers for inbound bus messages."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from ..constants import DEFAULT_STATUS_FIELDS
from ..contracts import AgentMessage, MessageType
from ..persistence import OrchestratorRepository
from .decisions import DecisionService
from .message_bus import MessageBus

logger = logging.getLogger(__name__)


class CoreHandlers:
    """status_request, task, decision, vote and alert handling."""

    def __init__(
        self,
        bus: MessageBus,
        repository: OrchestratorRepository,
        decisions: DecisionService,
    ) -> None:
        self.bus = bus
        self.repository = repository
        self.decisions = decisions

    def register(self) -> None:
        self.bus.register_handler(MessageType.STATUS_REQUEST, self.status_request)
        self.bus.register_handler(MessageType.TASK, self.task)
        self.bus.register_handler(MessageType.DECISION, self.decision)
        self.bus.register_handler(MessageType.VOTE, self.vote)
        self.bus.register_handler(MessageType.ALERT, self.alert)

    async def status_request(self, message: AgentMessage) -> None:
        agent = await self.repository.get_agent(message.to)
        if agent is None:
            return
        await self.bus.push_task(
            agent.id,
            {
                "type": MessageType.STATUS_REQUEST,
                "requestId": message.id,
                "from": message.from_,
                "include": message.payload.get("include") or list(DEFAULT_STATUS_FIELDS),
                "deadline": message.response_deadline.isoformat()
                if message.response_deadline
                else None,
            },
        )

    async def task(self, message: AgentMessage) -> None:
        payload = message.payload
        task_id = payload.get("task_id") or payload.get("taskId") or str(uuid.uuid4())
        await self.bus.push_task(
            message.to,
            {
                "type": MessageType.TASK,
                "taskId": task_id,
                "title": payload.get("title"),
                "description": payload.get("description"),
                "priority": message.priority,
                "deadline": payload.get("deadline"),
                "from": message.from_,
            },
        )
        if message.priority == "urgent":
            await self.bus.push_urgent(
                {"agentId": message.to, "taskId": task_id, "priority": "urgent"}
            )

    async def decision(self, message: AgentMessage) -> None:
        payload: Dict[str, Any] = message.payload
        await self.decisions.propose(
            title=payload.get("title", "Untitled decision"),
            description=payload.get("description", ""),
            proposed_by=message.from_,
            tier=payload.get("tier") or payload.get("type") or "major",
        )

    async def vote(self, message: AgentMessage) -> None:
        voter = message.from_
        agent = await self.repository.get_agent(message.from_)
        if agent is not None:
            voter = agent.role
        payload = {"voterType": voter, **message.payload}
        if "decisionId" not in payload and "decision_id" not in payload:
            logger.warning(f"Vote from {message.from_} without decision id")
            return
        if "vote" not in payload:
            # analysis replies and other vote-channel chatter carry no ballot
            logger.debug(f"Vote message {message.id} from {message.from_} carries no ballot")
            return
        await self.decisions.record_vote(payload)

    async def alert(self, message: AgentMessage) -> None:
        await self.decisions.raise_alert(message.from_, message.payload)
