"""In-memory transport for testing and single-process runs."""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict, deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import AgentMessage
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, AgentMessage]]):
    """In-process fan-out channels and list queues.

    Every publish is also recorded in ``published`` so tests can inspect
    traffic without subscribing.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._queues: Dict[str, Deque[Dict[str, Any]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.published: List[Tuple[str, AgentMessage]] = []

    async def publish(self, channel: str, message: AgentMessage) -> None:
        """Deliver message to each subscriber of the channel."""
        raw = (message.to_json(), message)
        async with self._lock:
            self.published.append((channel, message))
            for queue in self._subscribers[channel]:
                queue.put_nowait(raw)

    async def subscribe(
        self, channel: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, AgentMessage], AgentMessage]]:
        """Subscribe to messages from channel.

        Args:
            channel: The channel to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            self._subscribers[channel].append(queue)
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            while True:
                timeout = None
                if lifespan is not None:
                    timeout = lifespan - (loop.time() - start_time)
                    if timeout <= 0:
                        break
                try:
                    raw_message = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                yield raw_message, raw_message[1]
        finally:
            self._subscribers[channel].remove(queue)

    async def ack(self, raw_message: Tuple[str, AgentMessage]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def push(self, queue: str, item: Dict[str, Any]) -> None:
        async with self._lock:
            self._queues[queue].append(copy.deepcopy(item))

    async def pop(self, queue: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            if self._queues[queue]:
                return self._queues[queue].popleft()
            return None

    async def length(self, queue: str) -> int:
        return len(self._queues[queue])

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers[channel])

    def messages_for(self, channel: str) -> List[AgentMessage]:
        return [m for c, m in self.published if c == channel]
