"""Scheduler that turns due scheduled jobs into process instances."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .constants import SCHEDULER_BATCH_SIZE, SCHEDULER_POLL_INTERVAL, START_PROCESS_JOB
from .errors import NotFoundError
from .orchestrator import Orchestrator
from .persistence import JobStatus, ProcessRepository, ScheduledJob
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class Scheduler:
    """Polls ``scheduled_jobs`` and starts a process for each due job.

    Each due job is handled in a transaction of its own that locks the job
    row, marks it LOCKED, starts the process and marks the job DONE. The job
    row stays locked until that transaction ends, so concurrent schedulers
    never start the same job, and an interrupted start rolls back to NEW.
    A job whose process type or target row does not exist is parked as
    LOCKED and not retried; any other failure leaves it NEW for the next
    poll. The first step is dispatched after the commit.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        orchestrator: Orchestrator,
        batch_size: int = SCHEDULER_BATCH_SIZE,
        poll_interval: float = SCHEDULER_POLL_INTERVAL,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self.batch_size = batch_size
        self.poll_interval = poll_interval

    async def schedule(
        self,
        process_type: str,
        business_key: str,
        payload: Optional[Dict[str, Any]] = None,
        scheduled_at: Optional[datetime] = None,
        job_type: str = START_PROCESS_JOB,
    ) -> ScheduledJob:
        """Insert a NEW job (seed path for debugging and external producers)."""
        async with self._repository.transaction() as tx:
            job = await tx.insert_job(
                process_type,
                business_key,
                payload or {},
                scheduled_at or utcnow(),
                job_type,
            )
        logger.info(f"Scheduled job {job.id}: {process_type}/{business_key}")
        return job

    async def run_once(self, now: Optional[datetime] = None) -> List[int]:
        """Process one batch of due jobs; return the ids of jobs marked DONE."""
        async with self._repository.transaction() as tx:
            jobs = await tx.select_due_jobs(now or utcnow(), self.batch_size)

        done: List[int] = []
        for job in jobs:
            if await self._run_job(job.id):
                done.append(job.id)
        if jobs:
            logger.info(f"Scheduler processed {len(done)}/{len(jobs)} due jobs")
        return done

    async def _run_job(self, job_id: int) -> bool:
        try:
            async with self._repository.transaction() as tx:
                job = await tx.lock_job(job_id)
                if job is None:
                    logger.debug(f"Job {job_id} was taken by another scheduler")
                    return False
                start = await self._orchestrator.start_process_in(
                    tx, job.process_type, job.business_key, job.payload, job.id
                )
                await tx.update_job_status(job.id, JobStatus.DONE, expected=JobStatus.LOCKED)
        except NotFoundError as exc:
            logger.error(f"Job {job_id} cannot start and is parked as LOCKED: {exc}")
            await self._park(job_id)
            return False
        except Exception:
            logger.exception(f"Job {job_id} failed to start; it stays NEW for the next poll")
            return False

        try:
            await self._orchestrator.dispatch_start(start)
        except Exception:
            logger.exception(
                f"Job {job_id} started process_id={start.process_id} "
                f"but its first step {start.step_name} was not dispatched"
            )
        else:
            logger.info(f"Job {job_id} started process_id={start.process_id}")
        return True

    async def _park(self, job_id: int) -> None:
        async with self._repository.transaction() as tx:
            await tx.update_job_status(job_id, JobStatus.LOCKED, expected=JobStatus.NEW)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll every ``poll_interval`` seconds until ``lifespan`` expires."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            await self.run_once()
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(self.poll_interval)
