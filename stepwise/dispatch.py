"""Step dispatch for stepwise."""

from __future__ import annotations

import logging
from typing import Protocol

from .constants import RUN_STEP_TOPIC
from .contracts import RunStepMessage
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class StepDispatcher(Protocol):
    """Hands run-step messages to the delivery infrastructure."""

    async def dispatch(self, message: RunStepMessage) -> None:
        """Send ``message``; delivery is at-least-once."""


class TransportDispatcher:
    """Publishes run-step messages to a transport topic."""

    def __init__(self, transport: BaseTransport, topic: str = RUN_STEP_TOPIC) -> None:
        self._transport = transport
        self.topic = topic

    async def dispatch(self, message: RunStepMessage) -> None:
        await self._transport.publish(self.topic, message)
        logger.debug(
            f"Dispatched {message.step_name} for process_id={message.process_id} "
            f"(source_job_id={message.source_job_id})"
        )
