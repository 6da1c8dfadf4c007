"""Backoff between redeliveries of a failed run-step message."""

from __future__ import annotations

import asyncio
import logging
import random

logger = logging.getLogger(__name__)

MAX_BACKOFF = 60.0


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: float = MAX_BACKOFF,
) -> float:
    """Exponential delay for delivery ``attempt`` (1-based), capped, plus jitter."""
    delay = min(base ** attempt, max_delay)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5) -> float:
    """Sleep before redelivery ``attempt + 1``; returns the delay slept."""
    delay = compute_backoff(attempt, base=base)
    logger.debug(f"Backing off {delay:.2f}s after delivery {attempt}")
    await asyncio.sleep(delay)
    return delay
