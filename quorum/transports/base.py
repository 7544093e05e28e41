"""Base transport interface for quorum messaging."""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict, Generic, Optional, Tuple, TypeVar

from ..contracts import AgentMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract transport: pub/sub channels plus FIFO list queues."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, channel: str, message: AgentMessage) -> None:
        """Send a message to every current subscriber of a channel."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, channel: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, AgentMessage]]:
        """Yield raw transport message and AgentMessage pairs.

        Messages on one channel are yielded in publish order.

        Args:
            channel: The channel to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def push(self, queue: str, item: Dict[str, Any]) -> None:
        """Append an item to the tail of a list queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pop(self, queue: str) -> Optional[Dict[str, Any]]:
        """Remove and return the oldest item of a list queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def length(self, queue: str) -> int:
        """Return the number of items waiting in a list queue."""
        raise NotImplementedError

    async def ping(self) -> bool:
        """Return ``True`` when the broker is reachable."""
        return True
