"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import RunStepMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawInMemoryMessage = Tuple[str, str, RunStepMessage]


class InMemoryTransport(BaseTransport[RawInMemoryMessage]):
    """Simple in-process queue for unit tests.

    Raw messages are ``(topic, json, message)`` triples. Rejected messages
    without requeue are kept in ``dead_letters``.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawInMemoryMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.dead_letters: List[RawInMemoryMessage] = []

    async def publish(self, topic: str, message: RunStepMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInMemoryMessage, RunStepMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        deadline = self._deadline(lifespan)
        while not self._expired(deadline):
            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()

            if raw_message is not None:
                # Redeliveries receive a fresh copy, as a real broker would
                yield raw_message, RunStepMessage.from_json(raw_message[1])
                continue

            await asyncio.sleep(0.1)

    def pending(self, topic: str) -> List[RunStepMessage]:
        """Messages still queued on ``topic``, oldest first."""
        return [raw[2] for raw in self._queues[topic]]

    async def ack(self, raw_message: RawInMemoryMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawInMemoryMessage, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
        else:
            logger.warning(f"Dead-lettering message on topic {raw_message[0]}")
            self.dead_letters.append(raw_message)
