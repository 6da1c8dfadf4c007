"""Base transport interface for run-step delivery."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import RunStepMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    Implementations provide at-least-once delivery: a message that is not
    acknowledged may be seen again, and consumers must tolerate duplicates.
    ``RawMessageT`` is whatever the broker needs back to settle a delivery.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: RunStepMessage) -> None:
        """Enqueue ``message`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, RunStepMessage]]:
        """Yield ``(raw, message)`` deliveries from ``topic``.

        Stops after ``lifespan`` seconds, or never when it is ``None``.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Settle a delivery as processed."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery.

        Brokers without native rejection acknowledge it instead, which drops
        the message.
        """
        await self.ack(raw_message)

    @staticmethod
    def _deadline(lifespan: Optional[float]) -> Optional[float]:
        if not lifespan:
            return None
        return asyncio.get_running_loop().time() + lifespan

    @staticmethod
    def _expired(deadline: Optional[float]) -> bool:
        return deadline is not None and asyncio.get_running_loop().time() >= deadline
