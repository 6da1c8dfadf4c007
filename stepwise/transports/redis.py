"""Redis transport for cross-process messaging."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import RunStepMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawRedisMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawRedisMessage]):
    """Redis-based transport using lists as queues.

    Raw messages are ``(queue_name, json)`` pairs so a nack can push the
    payload back onto the queue it came from.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "stepwise",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: RunStepMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRedisMessage, RunStepMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        deadline = self._deadline(lifespan)
        while not self._expired(deadline):
            # Blocking pop with timeout
            result = await self._redis.brpop(queue_name, timeout=1)

            if result:
                _, message_json = result
                try:
                    message = RunStepMessage.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Discarding unparsable message on {queue_name}: {e}")
                    continue
                yield (queue_name, message_json), message

    async def ack(self, raw_message: RawRedisMessage) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: RawRedisMessage, requeue: bool = True) -> None:
        queue_name, message_json = raw_message
        if not self._redis:
            await self.connect()
        if requeue:
            await self._redis.rpush(queue_name, message_json)
        else:
            await self._redis.lpush(f"{queue_name}:deadletter", message_json)
