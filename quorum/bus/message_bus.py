"""Channel-addressed message bus with a type-keyed handler table."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..constants import ORCHESTRATOR_ID
from ..contracts import AgentMessage, MessageType, Priority
from ..persistence import EventRecord, OrchestratorRepository
from ..transports import BaseTransport
from .channels import (
    ORCHESTRATOR_SUBSCRIPTIONS,
    TIER_CHANNELS,
    URGENT_QUEUE,
    agent_channel,
    task_queue,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AgentMessage], Awaitable[None]]


class MessageBus:
    """Publish primitives, task queues and inbound dispatch for the orchestrator."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: OrchestratorRepository,
        orchestrator_id: str = ORCHESTRATOR_ID,
    ) -> None:
        self.transport = transport
        self.repository = repository
        self.orchestrator_id = orchestrator_id
        self._handlers: Dict[str, MessageHandler] = {}
        self._consumers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Publishing
    async def publish(self, channel: str, message: AgentMessage) -> None:
        await self.transport.publish(channel, message)
        logger.debug(f"Published {message.type} {message.id} to {channel}")

    def _message(
        self,
        message_type: str,
        to: str,
        payload: Dict[str, Any],
        priority: Priority,
        requires_response: bool,
        response_deadline: Optional[datetime],
    ) -> AgentMessage:
        return AgentMessage(
            type=message_type,
            from_=self.orchestrator_id,
            to=to,
            payload=payload,
            priority=priority,
            requires_response=requires_response,
            response_deadline=response_deadline,
        )

    async def send_to_agent(
        self,
        agent_id: str,
        message_type: str,
        payload: Dict[str, Any],
        priority: Priority = "normal",
        requires_response: bool = False,
        response_deadline: Optional[datetime] = None,
    ) -> AgentMessage:
        message = self._message(
            message_type, agent_id, payload, priority, requires_response, response_deadline
        )
        await self.publish(agent_channel(agent_id), message)
        return message

    async def broadcast(
        self,
        message_type: str,
        payload: Dict[str, Any],
        target: str = "all",
        priority: Priority = "normal",
        requires_response: bool = False,
        response_deadline: Optional[datetime] = None,
    ) -> AgentMessage:
        if target not in TIER_CHANNELS:
            raise ValueError(f"Unknown broadcast target: {target}")
        message = self._message(
            message_type, target, payload, priority, requires_response, response_deadline
        )
        await self.publish(TIER_CHANNELS[target], message)
        return message

    # ------------------------------------------------------------------
    # Task queues
    async def push_task(self, agent_id: str, task: Dict[str, Any]) -> None:
        """Queue a task for an agent and notify it on its channel."""
        await self.transport.push(task_queue(agent_id), task)
        await self.send_to_agent(
            agent_id, MessageType.TASK_QUEUED, {"message": "New task in queue"}
        )

    async def pop_task(self, agent_id: str) -> Optional[Dict[str, Any]]:
        return await self.transport.pop(task_queue(agent_id))

    async def push_urgent(self, record: Dict[str, Any]) -> None:
        await self.transport.push(URGENT_QUEUE, record)

    async def pop_urgent(self) -> Optional[Dict[str, Any]]:
        return await self.transport.pop(URGENT_QUEUE)

    async def urgent_length(self) -> int:
        return await self.transport.length(URGENT_QUEUE)

    # ------------------------------------------------------------------
    # Inbound dispatch
    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        if message_type in self._handlers:
            logger.debug(f"Replacing handler for {message_type}")
        self._handlers[message_type] = handler

    def handler_for(self, message_type: str) -> Optional[MessageHandler]:
        return self._handlers.get(message_type)

    async def log_event(
        self,
        event_type: str,
        source: str,
        target: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        try:
            await self.repository.log_event(
                EventRecord(
                    event_type=event_type,
                    source=source,
                    target=target,
                    payload=payload or {},
                    correlation_id=correlation_id,
                )
            )
        except Exception:
            logger.exception(f"Failed to record {event_type} event")

    async def process_message(self, message: AgentMessage) -> bool:
        """Log and dispatch one inbound message; return ``True`` if handled.

        Handler errors are logged and swallowed so a bad message never stops
        a consumer loop.
        """
        if message.from_ == self.orchestrator_id:
            return False

        await self.log_event(
            message.type,
            message.from_,
            message.to,
            message.payload,
            correlation_id=message.id,
        )

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning(f"No handler for message type {message.type} from {message.from_}")
            await self.log_event(
                "unhandled_message",
                self.orchestrator_id,
                payload={"type": message.type, "from": message.from_},
                correlation_id=message.id,
            )
            return False

        try:
            await handler(message)
        except Exception:
            logger.exception(f"Handler for {message.type} failed on message {message.id}")
            return False
        return True

    async def _consume(self, channel: str, lifespan: Optional[float]) -> None:
        logger.info(f"Subscribed to {channel}")
        async for raw, message in self.transport.subscribe(channel, lifespan):
            try:
                await self.process_message(message)
            finally:
                await self.transport.ack(raw)

    async def start(
        self,
        channels: Iterable[str] = ORCHESTRATOR_SUBSCRIPTIONS,
        lifespan: Optional[float] = None,
    ) -> None:
        """Start one consumer task per channel."""
        await self.transport.connect()
        for channel in channels:
            self._consumers.append(
                asyncio.create_task(self._consume(channel, lifespan), name=f"bus:{channel}")
            )
        # let consumers register their subscriptions before anything is published
        await asyncio.sleep(0)

    async def stop(self) -> None:
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()
        await self.transport.disconnect()
        logger.info("Message bus stopped")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._consumers)
