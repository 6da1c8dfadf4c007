"""SQL implementation of the process repository.

PostgreSQL (``postgresql+asyncpg``) is the production backend: row locks use
``FOR UPDATE``, the scheduler claims jobs with ``FOR UPDATE SKIP LOCKED`` and
insert-if-absent maps to ``ON CONFLICT DO NOTHING``. SQLite
(``sqlite+aiosqlite``) renders no lock clauses, so transactions against it
are serialised within the process instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import (
    ContextEntryRow,
    ProcessDB,
    ProcessInstanceRow,
    ProcessStepRow,
    ScheduledJobRow,
)
from ..errors import DuplicateKeyError
from ..utils.clock import utcnow
from .models import (
    ContextEntry,
    JobStatus,
    ProcessInstance,
    ProcessStatus,
    ProcessStep,
    ScheduledJob,
    StepStatus,
)
from .repository import ProcessRepository

logger = logging.getLogger(__name__)

INSTANCE = ProcessInstanceRow.__table__
STEP = ProcessStepRow.__table__
CONTEXT = ContextEntryRow.__table__
JOB = ScheduledJobRow.__table__

_TERMINAL = [StepStatus.DONE.value, StepStatus.FAILED.value]


class SQLTransaction:
    """Row operations bound to one ``AsyncSession`` transaction."""

    def __init__(self, session: AsyncSession, dialect: str) -> None:
        self._session = session
        self._dialect = dialect
        self.rolled_back = False

    def rollback(self) -> None:
        self.rolled_back = True

    # ------------------------------------------------------------------
    # Helpers
    def _insert(self, table):
        if self._dialect == "postgresql":
            return postgresql.insert(table)
        if self._dialect == "sqlite":
            return sqlite.insert(table)
        raise RuntimeError(f"Unsupported SQL dialect: {self._dialect}")

    async def _first(self, stmt) -> Any:
        return (await self._session.execute(stmt)).first()

    async def _all(self, stmt) -> list[Any]:
        return list((await self._session.execute(stmt)).all())

    async def _rowcount(self, stmt) -> int:
        result = await self._session.execute(stmt)
        return result.rowcount

    # ------------------------------------------------------------------
    # Process instances
    async def find_instance(
        self, process_type: str, business_key: str, *, for_update: bool = False
    ) -> ProcessInstance | None:
        stmt = select(INSTANCE).where(
            INSTANCE.c.process_type == process_type,
            INSTANCE.c.business_key == business_key,
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = await self._first(stmt)
        return ProcessInstance.model_validate(dict(row._mapping)) if row else None

    async def get_instance(
        self, process_id: int, *, for_update: bool = False
    ) -> ProcessInstance | None:
        stmt = select(INSTANCE).where(INSTANCE.c.id == process_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = await self._first(stmt)
        return ProcessInstance.model_validate(dict(row._mapping)) if row else None

    async def insert_instance(
        self,
        process_type: str,
        business_key: str,
        payload: dict[str, Any],
        source_job_id: int | None = None,
    ) -> ProcessInstance:
        stmt = (
            self._insert(INSTANCE)
            .values(
                process_type=process_type,
                business_key=business_key,
                status=ProcessStatus.RUNNING.value,
                payload=payload,
                source_job_id=source_job_id,
                started_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["process_type", "business_key"])
            .returning(*INSTANCE.c)
        )
        row = await self._first(stmt)
        if row is None:
            raise DuplicateKeyError(
                f"process_instance ({process_type}, {business_key}) already exists"
            )
        return ProcessInstance.model_validate(dict(row._mapping))

    async def update_instance_status(
        self,
        process_id: int,
        status: ProcessStatus,
        *,
        unless: Sequence[ProcessStatus] = (),
        finished: bool = False,
    ) -> int:
        stmt = update(INSTANCE).where(INSTANCE.c.id == process_id)
        if unless:
            stmt = stmt.where(INSTANCE.c.status.not_in([s.value for s in unless]))
        values: dict[str, Any] = {"status": status.value}
        if finished:
            values["finished_at"] = utcnow()
        return await self._rowcount(stmt.values(**values))

    async def list_instances(self) -> list[ProcessInstance]:
        rows = await self._all(select(INSTANCE).order_by(INSTANCE.c.id))
        return [ProcessInstance.model_validate(dict(r._mapping)) for r in rows]

    # ------------------------------------------------------------------
    # Steps
    async def get_step(
        self, process_id: int, step_name: str, *, for_update: bool = False
    ) -> ProcessStep | None:
        stmt = select(STEP).where(
            STEP.c.process_instance_id == process_id, STEP.c.step_name == step_name
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = await self._first(stmt)
        return ProcessStep.model_validate(dict(row._mapping)) if row else None

    async def insert_step_if_absent(
        self,
        process_id: int,
        step_name: str,
        input_payload: dict[str, Any] | None = None,
        join_group: str | None = None,
    ) -> bool:
        stmt = (
            self._insert(STEP)
            .values(
                process_instance_id=process_id,
                step_name=step_name,
                status=StepStatus.PENDING.value,
                attempt=0,
                join_group=join_group,
                input_payload=input_payload or {},
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["process_instance_id", "step_name"])
            .returning(STEP.c.id)
        )
        return await self._first(stmt) is not None

    async def claim_step(self, step_id: int) -> int:
        stmt = (
            update(STEP)
            .where(STEP.c.id == step_id, STEP.c.status == StepStatus.PENDING.value)
            .values(
                status=StepStatus.RUNNING.value,
                attempt=STEP.c.attempt + 1,
                locked_at=utcnow(),
            )
        )
        return await self._rowcount(stmt)

    async def complete_step(self, step_id: int, output_payload: dict[str, Any]) -> int:
        stmt = (
            update(STEP)
            .where(STEP.c.id == step_id, STEP.c.status.not_in(_TERMINAL))
            .values(
                status=StepStatus.DONE.value,
                output_payload=output_payload,
                finished_at=utcnow(),
            )
        )
        return await self._rowcount(stmt)

    async def fail_step(self, step_id: int, error: str) -> int:
        stmt = (
            update(STEP)
            .where(STEP.c.id == step_id, STEP.c.status.not_in(_TERMINAL))
            .values(
                status=StepStatus.FAILED.value,
                last_error=error,
                finished_at=utcnow(),
            )
        )
        return await self._rowcount(stmt)

    async def lock_join_group(self, process_id: int, join_group: str) -> list[ProcessStep]:
        stmt = (
            select(STEP)
            .where(STEP.c.process_instance_id == process_id, STEP.c.join_group == join_group)
            .order_by(STEP.c.id)
            .with_for_update()
        )
        return [ProcessStep.model_validate(dict(r._mapping)) for r in await self._all(stmt)]

    async def list_steps(self, process_id: int) -> list[ProcessStep]:
        stmt = select(STEP).where(STEP.c.process_instance_id == process_id).order_by(STEP.c.id)
        return [ProcessStep.model_validate(dict(r._mapping)) for r in await self._all(stmt)]

    # ------------------------------------------------------------------
    # Context journal
    async def append_context(
        self, process_id: int, step_name: str, payload: dict[str, Any]
    ) -> ContextEntry:
        stmt = (
            self._insert(CONTEXT)
            .values(
                process_instance_id=process_id,
                step_name=step_name,
                payload=payload,
                created_at=utcnow(),
            )
            .returning(*CONTEXT.c)
        )
        row = await self._first(stmt)
        return ContextEntry.model_validate(dict(row._mapping))

    async def list_context(
        self, process_id: int, *, until_step: str | None = None
    ) -> list[ContextEntry]:
        stmt = select(CONTEXT).where(CONTEXT.c.process_instance_id == process_id)
        if until_step is not None:
            last_write = (
                select(func.max(CONTEXT.c.id))
                .where(
                    CONTEXT.c.process_instance_id == process_id,
                    CONTEXT.c.step_name == until_step,
                )
                .scalar_subquery()
            )
            stmt = stmt.where(CONTEXT.c.id <= last_write)
        rows = await self._all(stmt.order_by(CONTEXT.c.id))
        return [ContextEntry.model_validate(dict(r._mapping)) for r in rows]

    # ------------------------------------------------------------------
    # Scheduled jobs
    async def insert_job(
        self,
        process_type: str,
        business_key: str,
        payload: dict[str, Any],
        scheduled_at: datetime,
        job_type: str,
    ) -> ScheduledJob:
        stmt = (
            self._insert(JOB)
            .values(
                job_type=job_type,
                process_type=process_type,
                business_key=business_key,
                payload=payload,
                scheduled_at=scheduled_at,
                status=JobStatus.NEW.value,
            )
            .returning(*JOB.c)
        )
        row = await self._first(stmt)
        return ScheduledJob.model_validate(dict(row._mapping))

    async def select_due_jobs(self, now: datetime, limit: int) -> list[ScheduledJob]:
        stmt = (
            select(JOB)
            .where(JOB.c.status == JobStatus.NEW.value, JOB.c.scheduled_at <= now)
            .order_by(JOB.c.scheduled_at, JOB.c.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [ScheduledJob.model_validate(dict(r._mapping)) for r in await self._all(stmt)]

    async def lock_job(self, job_id: int) -> ScheduledJob | None:
        stmt = (
            select(JOB)
            .where(JOB.c.id == job_id, JOB.c.status == JobStatus.NEW.value)
            .with_for_update(skip_locked=True)
        )
        row = await self._first(stmt)
        if row is None:
            return None
        locked_at = utcnow()
        await self._session.execute(
            update(JOB)
            .where(JOB.c.id == job_id)
            .values(status=JobStatus.LOCKED.value, locked_at=locked_at)
        )
        job = ScheduledJob.model_validate(dict(row._mapping))
        job.status = JobStatus.LOCKED
        job.locked_at = locked_at
        return job

    async def update_job_status(
        self, job_id: int, status: JobStatus, *, expected: JobStatus | None = None
    ) -> int:
        stmt = update(JOB).where(JOB.c.id == job_id)
        if expected is not None:
            stmt = stmt.where(JOB.c.status == expected.value)
        return await self._rowcount(stmt.values(status=status.value))

    async def get_job(self, job_id: int) -> ScheduledJob | None:
        row = await self._first(select(JOB).where(JOB.c.id == job_id))
        return ScheduledJob.model_validate(dict(row._mapping)) if row else None


class SQLProcessRepository(ProcessRepository):
    """Persist process state in PostgreSQL or SQLite via SQLAlchemy."""

    def __init__(self, database_url: str) -> None:
        self._db = ProcessDB(database_url)
        self._initialized = False
        self._schema_lock = asyncio.Lock()
        self._serial_lock = asyncio.Lock() if self._db.dialect == "sqlite" else None

    @property
    def db(self) -> ProcessDB:
        return self._db

    async def _ensure_schema(self) -> None:
        if self._initialized:
            return
        async with self._schema_lock:
            if not self._initialized:
                await self._db.init_db()
                self._initialized = True
                logger.debug(f"Schema ensured for {self._db.dialect} backend")

    def _serialized(self):
        return self._serial_lock or contextlib.nullcontext()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLTransaction]:
        await self._ensure_schema()
        async with self._serialized():
            async with self._db.session() as session:
                tx = SQLTransaction(session, self._db.dialect)
                try:
                    yield tx
                except BaseException:
                    await session.rollback()
                    raise
                if tx.rolled_back:
                    await session.rollback()
                else:
                    await session.commit()

    async def close(self) -> None:
        await self._db.dispose()
