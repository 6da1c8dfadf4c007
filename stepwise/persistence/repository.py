"""Repository abstraction for process state persistence."""

from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from .models import (
    ContextEntry,
    JobStatus,
    ProcessInstance,
    ProcessStatus,
    ProcessStep,
    ScheduledJob,
)


class ProcessTransaction(Protocol):
    """Row-level operations available inside one transaction.

    Reads with ``for_update=True`` hold a row lock until the transaction ends.
    Conditional updates return the number of affected rows so callers can
    detect a lost race. ``insert_step_if_absent`` returns ``True`` only when
    this call created the row.
    """

    def rollback(self) -> None:
        """Discard all changes when the transaction scope exits."""

    # Process instances -------------------------------------------------
    async def find_instance(
        self, process_type: str, business_key: str, *, for_update: bool = False
    ) -> ProcessInstance | None:
        """Look up an instance by its natural key."""

    async def get_instance(
        self, process_id: int, *, for_update: bool = False
    ) -> ProcessInstance | None:
        """Look up an instance by id."""

    async def insert_instance(
        self,
        process_type: str,
        business_key: str,
        payload: dict[str, Any],
        source_job_id: int | None = None,
    ) -> ProcessInstance:
        """Insert a RUNNING instance; raise ``DuplicateKeyError`` on key clash."""

    async def update_instance_status(
        self,
        process_id: int,
        status: ProcessStatus,
        *,
        unless: Sequence[ProcessStatus] = (),
        finished: bool = False,
    ) -> int:
        """Set instance status unless it currently holds one of ``unless``."""

    async def list_instances(self) -> list[ProcessInstance]:
        """Return all instances ordered by id."""

    # Steps -------------------------------------------------------------
    async def get_step(
        self, process_id: int, step_name: str, *, for_update: bool = False
    ) -> ProcessStep | None:
        """Look up a step by (process, step name)."""

    async def insert_step_if_absent(
        self,
        process_id: int,
        step_name: str,
        input_payload: dict[str, Any] | None = None,
        join_group: str | None = None,
    ) -> bool:
        """Insert a PENDING step unless one with the same name exists."""

    async def claim_step(self, step_id: int) -> int:
        """PENDING -> RUNNING, bump attempt and stamp lock time."""

    async def complete_step(self, step_id: int, output_payload: dict[str, Any]) -> int:
        """Set DONE with output unless already DONE or FAILED."""

    async def fail_step(self, step_id: int, error: str) -> int:
        """Set FAILED with error unless already DONE or FAILED."""

    async def lock_join_group(self, process_id: int, join_group: str) -> list[ProcessStep]:
        """Lock and return every step tagged with ``join_group``."""

    async def list_steps(self, process_id: int) -> list[ProcessStep]:
        """Return all steps of a process ordered by id."""

    # Context journal ---------------------------------------------------
    async def append_context(
        self, process_id: int, step_name: str, payload: dict[str, Any]
    ) -> ContextEntry:
        """Insert one immutable context entry."""

    async def list_context(
        self, process_id: int, *, until_step: str | None = None
    ) -> list[ContextEntry]:
        """Return entries ordered by id, optionally cut at ``until_step``'s last write."""

    # Scheduled jobs ----------------------------------------------------
    async def insert_job(
        self,
        process_type: str,
        business_key: str,
        payload: dict[str, Any],
        scheduled_at: datetime,
        job_type: str,
    ) -> ScheduledJob:
        """Insert a NEW scheduled job."""

    async def select_due_jobs(self, now: datetime, limit: int) -> list[ScheduledJob]:
        """Skip-locked select of due NEW jobs; statuses are left untouched."""

    async def lock_job(self, job_id: int) -> ScheduledJob | None:
        """Lock a NEW job (skipping rows held elsewhere) and mark it LOCKED.

        Returns ``None`` when the job is no longer NEW or another transaction
        holds it. The LOCKED status only becomes visible when the enclosing
        transaction commits.
        """

    async def update_job_status(
        self, job_id: int, status: JobStatus, *, expected: JobStatus | None = None
    ) -> int:
        """Set job status, optionally guarded by its current status."""

    async def get_job(self, job_id: int) -> ScheduledJob | None:
        """Look up a scheduled job by id."""


class ProcessRepository(metaclass=abc.ABCMeta):
    """Base class for process state persistence backends."""

    @abc.abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[ProcessTransaction]:
        """Open a transaction; commit on normal exit, roll back on error."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass

    async def get_process(self, process_id: int) -> Optional[ProcessInstance]:
        async with self.transaction() as tx:
            return await tx.get_instance(process_id)

    async def list_processes(self) -> list[ProcessInstance]:
        async with self.transaction() as tx:
            return await tx.list_instances()

    async def get_step(self, process_id: int, step_name: str) -> Optional[ProcessStep]:
        async with self.transaction() as tx:
            return await tx.get_step(process_id, step_name)

    async def list_steps(self, process_id: int) -> list[ProcessStep]:
        async with self.transaction() as tx:
            return await tx.list_steps(process_id)

    async def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        async with self.transaction() as tx:
            return await tx.get_job(job_id)
