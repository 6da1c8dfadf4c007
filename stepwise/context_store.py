"""Shared process context kept as an append-only journal.

Every step appends its own output as a new entry; nothing is ever updated or
deleted. Readers fold the entries in insertion order, later keys overriding
earlier ones. Concurrent fan-out branches therefore never contend on a shared
row.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from .persistence import ContextEntry, ProcessRepository

logger = logging.getLogger(__name__)


class ContextStore:
    def __init__(self, repository: ProcessRepository) -> None:
        self._repository = repository

    async def append(
        self, process_id: int, step_name: str, payload: Optional[Dict[str, Any]]
    ) -> Optional[ContextEntry]:
        """Record ``payload`` as ``step_name``'s contribution. Empty payloads are skipped."""
        if not payload:
            return None
        async with self._repository.transaction() as tx:
            entry = await tx.append_context(process_id, step_name, payload)
        logger.debug(
            f"Context entry {entry.id} appended by {step_name} for process_id={process_id}"
        )
        return entry

    async def load(self, process_id: int) -> Dict[str, Any]:
        """Merged context of everything written so far."""
        return self.merge(await self.entries(process_id))

    async def load_until_step(self, process_id: int, step_name: str) -> Dict[str, Any]:
        """Merged context as it stood right after ``step_name`` last wrote.

        Returns an empty dict when the step never wrote anything.
        """
        async with self._repository.transaction() as tx:
            entries = await tx.list_context(process_id, until_step=step_name)
        return self.merge(entries)

    async def entries(self, process_id: int) -> list[ContextEntry]:
        """Raw journal for a process, oldest first."""
        async with self._repository.transaction() as tx:
            return await tx.list_context(process_id)

    @staticmethod
    def merge(entries: Iterable[ContextEntry]) -> Dict[str, Any]:
        # shallow: a later entry replaces a colliding key wholesale
        merged: Dict[str, Any] = {}
        for entry in sorted(entries, key=lambda e: e.id):
            merged.update(entry.payload)
        return merged
