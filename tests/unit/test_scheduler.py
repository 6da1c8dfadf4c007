"""Tests for the scheduled-job poller."""

import asyncio
import logging
from datetime import timedelta

import pytest
import pytest_asyncio

from stepwise.constants import RUN_STEP_TOPIC
from stepwise.dispatch import TransportDispatcher
from stepwise.orchestrator import Orchestrator
from stepwise.persistence import InMemoryProcessRepository, JobStatus, SQLProcessRepository
from stepwise.scheduler import Scheduler
from stepwise.utils.clock import utcnow


@pytest.mark.asyncio
async def test_run_once_starts_due_jobs(repository, orchestrator, transport):
    scheduler = Scheduler(repository, orchestrator)
    job = await scheduler.schedule("order_fulfillment", "ORDER-1", {"orderId": 1})

    assert await scheduler.run_once() == [job.id]

    assert (await repository.get_job(job.id)).status == JobStatus.DONE
    [proc] = await repository.list_processes()
    assert proc.business_key == "ORDER-1"
    assert proc.source_job_id == job.id
    [message] = transport.pending(RUN_STEP_TOPIC)
    assert message.step_name == "prepare"
    assert message.source_job_id == job.id


@pytest.mark.asyncio
async def test_future_jobs_are_left_alone(repository, orchestrator):
    scheduler = Scheduler(repository, orchestrator)
    job = await scheduler.schedule(
        "order_fulfillment", "ORDER-1", scheduled_at=utcnow() + timedelta(hours=1)
    )

    assert await scheduler.run_once() == []
    assert (await repository.get_job(job.id)).status == JobStatus.NEW
    assert await scheduler.run_once(now=utcnow() + timedelta(hours=2)) == [job.id]


@pytest.mark.asyncio
async def test_batch_size_limits_claimed_jobs(repository, orchestrator):
    scheduler = Scheduler(repository, orchestrator, batch_size=2)
    for i in range(3):
        await scheduler.schedule("order_fulfillment", f"ORDER-{i}")

    assert len(await scheduler.run_once()) == 2
    assert len(await scheduler.run_once()) == 1
    assert await scheduler.run_once() == []
    assert len(await repository.list_processes()) == 3


@pytest.mark.asyncio
async def test_job_with_unknown_process_type_is_parked(repository, orchestrator, caplog):
    scheduler = Scheduler(repository, orchestrator)
    bad = await scheduler.schedule("unknown_process", "X")
    good = await scheduler.schedule("order_fulfillment", "ORDER-1")

    with caplog.at_level(logging.ERROR, logger="stepwise.scheduler"):
        assert await scheduler.run_once() == [good.id]

    assert (await repository.get_job(bad.id)).status == JobStatus.LOCKED
    assert (await repository.get_job(good.id)).status == JobStatus.DONE
    assert f"Job {bad.id} cannot start" in caplog.text
    # a parked job is not picked up again
    assert await scheduler.run_once() == []
    [proc] = await repository.list_processes()
    assert proc.process_type == "order_fulfillment"


@pytest.mark.asyncio
async def test_transient_start_failure_rolls_back_and_retries(repository, orchestrator, transport, monkeypatch):
    scheduler = Scheduler(repository, orchestrator)
    job = await scheduler.schedule("order_fulfillment", "ORDER-1")
    real_start = orchestrator.start_process_in
    calls = []

    async def flaky_start(tx, *args):
        start = await real_start(tx, *args)
        calls.append(start)
        if len(calls) == 1:
            raise RuntimeError("database hiccup")
        return start

    monkeypatch.setattr(orchestrator, "start_process_in", flaky_start)

    assert await scheduler.run_once() == []
    assert (await repository.get_job(job.id)).status == JobStatus.NEW
    assert await repository.list_processes() == []
    assert transport.pending(RUN_STEP_TOPIC) == []

    assert await scheduler.run_once() == [job.id]
    assert len(await repository.list_processes()) == 1
    assert len(transport.pending(RUN_STEP_TOPIC)) == 1


@pytest_asyncio.fixture(params=["inmemory", "sqlite"])
async def any_repository(request, tmp_path):
    if request.param == "inmemory":
        repo = InMemoryProcessRepository()
    else:
        repo = SQLProcessRepository(f"sqlite+aiosqlite:///{tmp_path}/stepwise.db")
    yield repo
    await repo.close()


@pytest.mark.asyncio
async def test_interrupted_start_leaves_job_new(any_repository, catalog, transport, monkeypatch):
    orchestrator = Orchestrator(any_repository, TransportDispatcher(transport), catalog)
    scheduler = Scheduler(any_repository, orchestrator)
    job = await scheduler.schedule("order_fulfillment", "ORDER-1")
    real_start = orchestrator.start_process_in

    async def cancelled_start(tx, *args):
        await real_start(tx, *args)
        raise asyncio.CancelledError()

    monkeypatch.setattr(orchestrator, "start_process_in", cancelled_start)
    with pytest.raises(asyncio.CancelledError):
        await scheduler.run_once()

    assert (await any_repository.get_job(job.id)).status == JobStatus.NEW
    assert await any_repository.list_processes() == []
    assert transport.pending(RUN_STEP_TOPIC) == []

    monkeypatch.setattr(orchestrator, "start_process_in", real_start)
    assert await scheduler.run_once() == [job.id]
    assert (await any_repository.get_job(job.id)).status == JobStatus.DONE
    assert [m.step_name for m in transport.pending(RUN_STEP_TOPIC)] == ["prepare"]


@pytest.mark.asyncio
async def test_concurrent_schedulers_start_each_job_once(repository, orchestrator, transport):
    first = Scheduler(repository, orchestrator)
    second = Scheduler(repository, orchestrator)
    for i in range(4):
        await first.schedule("order_fulfillment", f"ORDER-{i}")

    done_a, done_b = await asyncio.gather(first.run_once(), second.run_once())

    assert not set(done_a) & set(done_b)
    assert len(done_a) + len(done_b) == 4
    assert len(await repository.list_processes()) == 4
    assert len(transport.pending(RUN_STEP_TOPIC)) == 4


@pytest.mark.asyncio
async def test_jobs_for_same_business_key_share_one_instance(repository, orchestrator, transport):
    scheduler = Scheduler(repository, orchestrator)
    await scheduler.schedule("order_fulfillment", "ORDER-1")
    await scheduler.schedule("order_fulfillment", "ORDER-1")

    assert len(await scheduler.run_once()) == 2
    assert len(await repository.list_processes()) == 1
    assert len(transport.pending(RUN_STEP_TOPIC)) == 1


@pytest.mark.asyncio
async def test_start_with_lifespan_polls_and_exits(repository, orchestrator):
    scheduler = Scheduler(repository, orchestrator, poll_interval=0.01)
    job = await scheduler.schedule("order_fulfillment", "ORDER-1")

    await scheduler.start(lifespan=0.05)

    assert (await repository.get_job(job.id)).status == JobStatus.DONE
