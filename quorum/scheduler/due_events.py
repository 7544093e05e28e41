"""Dispatch of calendar events whose scheduled time has passed."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..config import QuorumConfig
from ..contracts import MessageType, utcnow
from ..persistence import Agent, EventStatus, OrchestratorRepository, ScheduledEvent
from ..bus import MessageBus

logger = logging.getLogger(__name__)


def build_event_payload(event: ScheduledEvent) -> Dict[str, Any]:
    """Task payload for an agent, shaped by event type."""
    base: Dict[str, Any] = {
        "eventId": event.id,
        "eventType": event.event_type,
        "scheduledAt": event.scheduled_at.isoformat(),
        "title": event.title,
    }
    if event.event_type == "post":
        return {
            **base,
            "action": "publish_post",
            "platform": event.platform,
            "content": event.content,
            "mediaUrls": event.media_urls,
        }
    if event.event_type == "ama":
        return {
            **base,
            "action": "host_ama",
            "platform": event.platform,
            "description": event.description,
            "durationMinutes": event.duration_minutes,
        }
    if event.event_type == "release":
        return {
            **base,
            "action": "announce_release",
            "description": event.description,
            "content": event.content,
            "platform": event.platform,
            "projectId": event.project_id,
        }
    if event.event_type == "milestone":
        return {
            **base,
            "action": "report_milestone",
            "description": event.description,
            "projectId": event.project_id,
        }
    return {
        **base,
        "action": "handle_scheduled_event",
        "description": event.description,
        "content": event.content,
    }


class DueEventExecutor:
    """Fire-once dispatch of due calendar events.

    A failed dispatch marks the event ``failed``; it is never retried here.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        bus: MessageBus,
        config: Optional[QuorumConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.config = config or QuorumConfig()
        self.clock = clock

    async def _resolve_agent(self, reference: str) -> Optional[Agent]:
        agent = await self.repository.find_agent_by_role(reference)
        if agent is None:
            agent = await self.repository.get_agent(reference)
        return agent

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock()
        settings = self.config.scheduler
        events = await self.repository.find_due_events(now, limit=settings.due_event_batch_size)
        counts = {"dispatched": 0, "failed": 0}
        for event in events:
            if await self.execute(event, now):
                counts["dispatched"] += 1
            else:
                counts["failed"] += 1
        if events:
            logger.info(
                f"Due events: {counts['dispatched']} dispatched, {counts['failed']} failed"
            )
        return counts

    async def execute(self, event: ScheduledEvent, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        agent = await self._resolve_agent(event.agent)
        if agent is None:
            await self._mark_failed(event, f"Agent not found: {event.agent}", now)
            return False

        deadline = now + timedelta(seconds=self.config.scheduler.due_event_deadline_seconds)
        try:
            message = await self.bus.send_to_agent(
                agent.id,
                MessageType.TASK,
                build_event_payload(event),
                priority="high",
                requires_response=True,
                response_deadline=deadline,
            )
        except Exception as e:
            logger.exception(f"Failed to dispatch scheduled event {event.id}")
            await self._mark_failed(event, str(e), now)
            return False

        await self.repository.update_scheduled_event(
            event.id,
            {
                "status": EventStatus.DISPATCHED,
                "executed_at": now,
                "execution_result": {"messageId": message.id, "agentId": agent.id},
            },
        )
        await self.bus.log_event(
            "scheduled_event_dispatched",
            self.bus.orchestrator_id,
            target=agent.id,
            payload={"eventId": event.id, "eventType": event.event_type},
        )
        logger.info(f"Dispatched {event.event_type} event {event.id} to {agent.id}")
        return True

    async def _mark_failed(self, event: ScheduledEvent, error: str, now: datetime) -> None:
        logger.warning(f"Scheduled event {event.id} failed: {error}")
        await self.repository.update_scheduled_event(
            event.id,
            {
                "status": EventStatus.FAILED,
                "executed_at": now,
                "execution_result": {"error": error},
            },
        )
