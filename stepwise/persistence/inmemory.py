"""In-memory implementation of the process repository."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Sequence

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


@dataclass
class _State:
    instances: Dict[int, ProcessInstance] = field(default_factory=dict)
    steps: Dict[int, ProcessStep] = field(default_factory=dict)
    context: List[ContextEntry] = field(default_factory=list)
    jobs: Dict[int, ScheduledJob] = field(default_factory=dict)
    sequences: Dict[str, int] = field(default_factory=dict)

    def next_id(self, name: str) -> int:
        self.sequences[name] = self.sequences.get(name, 0) + 1
        return self.sequences[name]


class InMemoryTransaction:
    """Transaction over the in-memory state.

    The owning repository serialises transactions, so row locks are implied
    and ``for_update`` flags are accepted for interface parity only.
    """

    def __init__(self, state: _State) -> None:
        self._state = state
        self.rolled_back = False

    def rollback(self) -> None:
        self.rolled_back = True

    # ------------------------------------------------------------------
    def _find_step(self, process_id: int, step_name: str) -> ProcessStep | None:
        for step in self._state.steps.values():
            if step.process_instance_id == process_id and step.step_name == step_name:
                return step
        return None

    # ------------------------------------------------------------------
    async def find_instance(
        self, process_type: str, business_key: str, *, for_update: bool = False
    ) -> ProcessInstance | None:
        for inst in self._state.instances.values():
            if inst.process_type == process_type and inst.business_key == business_key:
                return inst.model_copy(deep=True)
        return None

    async def get_instance(
        self, process_id: int, *, for_update: bool = False
    ) -> ProcessInstance | None:
        inst = self._state.instances.get(process_id)
        return inst.model_copy(deep=True) if inst else None

    async def insert_instance(
        self,
        process_type: str,
        business_key: str,
        payload: dict[str, Any],
        source_job_id: int | None = None,
    ) -> ProcessInstance:
        for inst in self._state.instances.values():
            if inst.process_type == process_type and inst.business_key == business_key:
                raise DuplicateKeyError(
                    f"process_instance ({process_type}, {business_key}) already exists"
                )
        inst = ProcessInstance(
            id=self._state.next_id("process_instance"),
            process_type=process_type,
            business_key=business_key,
            payload=copy.deepcopy(payload),
            source_job_id=source_job_id,
        )
        self._state.instances[inst.id] = inst
        return inst.model_copy(deep=True)

    async def update_instance_status(
        self,
        process_id: int,
        status: ProcessStatus,
        *,
        unless: Sequence[ProcessStatus] = (),
        finished: bool = False,
    ) -> int:
        inst = self._state.instances.get(process_id)
        if inst is None or inst.status in unless:
            return 0
        inst.status = status
        if finished:
            inst.finished_at = utcnow()
        return 1

    async def list_instances(self) -> list[ProcessInstance]:
        return [
            self._state.instances[key].model_copy(deep=True)
            for key in sorted(self._state.instances)
        ]

    # ------------------------------------------------------------------
    async def get_step(
        self, process_id: int, step_name: str, *, for_update: bool = False
    ) -> ProcessStep | None:
        step = self._find_step(process_id, step_name)
        return step.model_copy(deep=True) if step else None

    async def insert_step_if_absent(
        self,
        process_id: int,
        step_name: str,
        input_payload: dict[str, Any] | None = None,
        join_group: str | None = None,
    ) -> bool:
        if self._find_step(process_id, step_name) is not None:
            return False
        step = ProcessStep(
            id=self._state.next_id("process_step"),
            process_instance_id=process_id,
            step_name=step_name,
            join_group=join_group,
            input_payload=copy.deepcopy(input_payload or {}),
        )
        self._state.steps[step.id] = step
        return True

    async def claim_step(self, step_id: int) -> int:
        step = self._state.steps.get(step_id)
        if step is None or step.status != StepStatus.PENDING:
            return 0
        step.status = StepStatus.RUNNING
        step.attempt += 1
        step.locked_at = utcnow()
        return 1

    async def complete_step(self, step_id: int, output_payload: dict[str, Any]) -> int:
        step = self._state.steps.get(step_id)
        if step is None or step.is_terminal:
            return 0
        step.status = StepStatus.DONE
        step.output_payload = copy.deepcopy(output_payload)
        step.finished_at = utcnow()
        return 1

    async def fail_step(self, step_id: int, error: str) -> int:
        step = self._state.steps.get(step_id)
        if step is None or step.is_terminal:
            return 0
        step.status = StepStatus.FAILED
        step.last_error = error
        step.finished_at = utcnow()
        return 1

    async def lock_join_group(self, process_id: int, join_group: str) -> list[ProcessStep]:
        return [
            step.model_copy(deep=True)
            for key, step in sorted(self._state.steps.items())
            if step.process_instance_id == process_id and step.join_group == join_group
        ]

    async def list_steps(self, process_id: int) -> list[ProcessStep]:
        return [
            step.model_copy(deep=True)
            for key, step in sorted(self._state.steps.items())
            if step.process_instance_id == process_id
        ]

    # ------------------------------------------------------------------
    async def append_context(
        self, process_id: int, step_name: str, payload: dict[str, Any]
    ) -> ContextEntry:
        entry = ContextEntry(
            id=self._state.next_id("process_context"),
            process_instance_id=process_id,
            step_name=step_name,
            payload=copy.deepcopy(payload),
        )
        self._state.context.append(entry)
        return entry.model_copy(deep=True)

    async def list_context(
        self, process_id: int, *, until_step: str | None = None
    ) -> list[ContextEntry]:
        entries = [e for e in self._state.context if e.process_instance_id == process_id]
        if until_step is not None:
            ids = [e.id for e in entries if e.step_name == until_step]
            if not ids:
                return []
            cutoff = max(ids)
            entries = [e for e in entries if e.id <= cutoff]
        return [e.model_copy(deep=True) for e in sorted(entries, key=lambda e: e.id)]

    # ------------------------------------------------------------------
    async def insert_job(
        self,
        process_type: str,
        business_key: str,
        payload: dict[str, Any],
        scheduled_at: datetime,
        job_type: str,
    ) -> ScheduledJob:
        job = ScheduledJob(
            id=self._state.next_id("scheduled_jobs"),
            job_type=job_type,
            process_type=process_type,
            business_key=business_key,
            payload=copy.deepcopy(payload),
            scheduled_at=scheduled_at,
        )
        self._state.jobs[job.id] = job
        return job.model_copy(deep=True)

    async def select_due_jobs(self, now: datetime, limit: int) -> list[ScheduledJob]:
        due = sorted(
            (
                job
                for job in self._state.jobs.values()
                if job.status == JobStatus.NEW and job.scheduled_at <= now
            ),
            key=lambda job: (job.scheduled_at, job.id),
        )[:limit]
        return [job.model_copy(deep=True) for job in due]

    async def lock_job(self, job_id: int) -> ScheduledJob | None:
        job = self._state.jobs.get(job_id)
        if job is None or job.status != JobStatus.NEW:
            return None
        job.status = JobStatus.LOCKED
        job.locked_at = utcnow()
        return job.model_copy(deep=True)

    async def update_job_status(
        self, job_id: int, status: JobStatus, *, expected: JobStatus | None = None
    ) -> int:
        job = self._state.jobs.get(job_id)
        if job is None or (expected is not None and job.status != expected):
            return 0
        job.status = status
        return 1

    async def get_job(self, job_id: int) -> ScheduledJob | None:
        job = self._state.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None


class InMemoryProcessRepository(ProcessRepository):
    """Store process state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Transactions run one at a time and a
    rolled back transaction restores the state captured when it began.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            tx = InMemoryTransaction(self._state)
            try:
                yield tx
            except BaseException:
                self._restore(snapshot)
                raise
            if tx.rolled_back:
                self._restore(snapshot)

    def _restore(self, snapshot: _State) -> None:
        self._state.instances = snapshot.instances
        self._state.steps = snapshot.steps
        self._state.context = snapshot.context
        self._state.jobs = snapshot.jobs
        self._state.sequences = snapshot.sequences
