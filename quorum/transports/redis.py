"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import AgentMessage
from ..errors import DependencyFailure
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis pub/sub for channels and Redis lists for queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except redis.ConnectionError as e:
            self._redis = None
            raise DependencyFailure(f"Redis unreachable at {self.host}:{self.port}: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def publish(self, channel: str, message: AgentMessage) -> None:
        client = await self._client()
        await client.publish(channel, message.to_json())

    async def subscribe(
        self, channel: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, AgentMessage]]:
        """Subscribe to a Redis pub/sub channel."""
        client = await self._client()
        pubsub = client.pubsub()
        await pubsub.subscribe(channel)
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            while True:
                if lifespan is not None and loop.time() - start_time >= lifespan:
                    break
                data = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if data is None:
                    continue
                raw = data["data"]
                try:
                    message = AgentMessage.from_json(raw)
                except ValidationError as e:
                    logger.warning(f"Dropping unparseable message on {channel}: {e}")
                    continue
                yield raw, message
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis pub/sub (delivery is fire-and-forget)."""
        pass

    async def push(self, queue: str, item: Dict[str, Any]) -> None:
        client = await self._client()
        await client.lpush(queue, json.dumps(item, default=str))

    async def pop(self, queue: str) -> Optional[Dict[str, Any]]:
        client = await self._client()
        data = await client.rpop(queue)
        return json.loads(data) if data else None

    async def length(self, queue: str) -> int:
        client = await self._client()
        return await client.llen(queue)

    async def ping(self) -> bool:
        client = await self._client()
        return bool(await client.ping())
