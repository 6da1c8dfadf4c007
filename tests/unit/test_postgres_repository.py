"""PostgreSQL locking behaviour; needs a live server in TEST_PG_DSN."""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio

from stepwise.persistence import JobStatus, SQLProcessRepository, StepStatus
from stepwise.utils.clock import utcnow

PG_DSN = os.getenv("TEST_PG_DSN")

pytestmark = pytest.mark.skipif(not PG_DSN, reason="TEST_PG_DSN not set")


@pytest_asyncio.fixture
async def repo():
    repository = SQLProcessRepository(PG_DSN)
    yield repository
    await repository.close()


@pytest.mark.asyncio
async def test_locked_job_is_skipped_by_other_pollers(repo):
    key = uuid.uuid4().hex
    now = utcnow()
    async with repo.transaction() as tx:
        held = await tx.insert_job("order_fulfillment", f"{key}-0", {}, now, "START_PROCESS")
        free = await tx.insert_job("order_fulfillment", f"{key}-1", {}, now, "START_PROCESS")

    locked = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with repo.transaction() as tx:
            assert await tx.lock_job(held.id) is not None
            locked.set()
            await release.wait()
            raise asyncio.CancelledError()

    async def other():
        await locked.wait()
        try:
            async with repo.transaction() as tx:
                ids = {j.id for j in await tx.select_due_jobs(now, 1000)}
                again = await tx.lock_job(held.id)
        finally:
            release.set()
        return ids, again

    held_task = asyncio.create_task(holder())
    ids, again = await other()
    with pytest.raises(asyncio.CancelledError):
        await held_task

    assert held.id not in ids
    assert free.id in ids
    assert again is None
    # the interrupted holder rolled back, so the job is NEW again
    assert (await repo.get_job(held.id)).status == JobStatus.NEW


@pytest.mark.asyncio
async def test_insert_step_if_absent_under_race(repo):
    key = uuid.uuid4().hex
    async with repo.transaction() as tx:
        inst = await tx.insert_instance("order_fulfillment", key, {})

    async def insert():
        async with repo.transaction() as tx:
            return await tx.insert_step_if_absent(inst.id, "prepare")

    results = await asyncio.gather(*(insert() for _ in range(5)))
    assert results.count(True) == 1
    step = await repo.get_step(inst.id, "prepare")
    assert step.status == StepStatus.PENDING
