"""Behaviour shared by every process repository backend."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from stepwise.errors import DuplicateKeyError
from stepwise.persistence import (
    InMemoryProcessRepository,
    JobStatus,
    ProcessStatus,
    SQLProcessRepository,
    StepStatus,
    get_repository,
)
from stepwise.utils.clock import utcnow


@pytest_asyncio.fixture(params=["inmemory", "sqlite"])
async def repo(request, tmp_path):
    if request.param == "inmemory":
        repository = InMemoryProcessRepository()
    else:
        repository = SQLProcessRepository(f"sqlite+aiosqlite:///{tmp_path}/stepwise.db")
    yield repository
    await repository.close()


async def _instance(repo, key="K-1"):
    async with repo.transaction() as tx:
        return await tx.insert_instance("order_fulfillment", key, {"orderId": 1})


@pytest.mark.asyncio
async def test_insert_and_find_instance(repo):
    inst = await _instance(repo)

    async with repo.transaction() as tx:
        found = await tx.find_instance("order_fulfillment", "K-1", for_update=True)
        missing = await tx.find_instance("order_fulfillment", "K-2")

    assert found.id == inst.id
    assert found.status == ProcessStatus.RUNNING
    assert found.payload == {"orderId": 1}
    assert missing is None


@pytest.mark.asyncio
async def test_insert_instance_duplicate_key(repo):
    await _instance(repo)
    with pytest.raises(DuplicateKeyError):
        await _instance(repo)
    assert len(await repo.list_processes()) == 1


@pytest.mark.asyncio
async def test_update_instance_status_respects_guard(repo):
    inst = await _instance(repo)
    async with repo.transaction() as tx:
        assert await tx.update_instance_status(inst.id, ProcessStatus.COMPLETED, finished=True) == 1
        assert (
            await tx.update_instance_status(
                inst.id, ProcessStatus.FAILED, unless=(ProcessStatus.COMPLETED,)
            )
            == 0
        )
    proc = await repo.get_process(inst.id)
    assert proc.status == ProcessStatus.COMPLETED
    assert proc.finished_at is not None


@pytest.mark.asyncio
async def test_insert_step_if_absent_and_claim(repo):
    inst = await _instance(repo)
    async with repo.transaction() as tx:
        assert await tx.insert_step_if_absent(inst.id, "prepare", {"a": 1}) is True
        assert await tx.insert_step_if_absent(inst.id, "prepare", {"a": 2}) is False

    async with repo.transaction() as tx:
        step = await tx.get_step(inst.id, "prepare", for_update=True)
        assert step.status == StepStatus.PENDING
        assert step.attempt == 0
        assert step.input_payload == {"a": 1}
        assert await tx.claim_step(step.id) == 1
        assert await tx.claim_step(step.id) == 0

    step = await repo.get_step(inst.id, "prepare")
    assert step.status == StepStatus.RUNNING
    assert step.attempt == 1
    assert step.locked_at is not None


@pytest.mark.asyncio
async def test_settled_steps_absorb_updates(repo):
    inst = await _instance(repo)
    async with repo.transaction() as tx:
        await tx.insert_step_if_absent(inst.id, "prepare")
        step = await tx.get_step(inst.id, "prepare")
        assert await tx.complete_step(step.id, {"done": True}) == 1
        assert await tx.complete_step(step.id, {"done": False}) == 0
        assert await tx.fail_step(step.id, "late") == 0

    step = await repo.get_step(inst.id, "prepare")
    assert step.status == StepStatus.DONE
    assert step.output_payload == {"done": True}
    assert step.last_error is None


@pytest.mark.asyncio
async def test_join_group_listing(repo):
    inst = await _instance(repo)
    async with repo.transaction() as tx:
        await tx.insert_step_if_absent(inst.id, "prepare")
        await tx.insert_step_if_absent(inst.id, "archive_db", join_group="archive_group")
        await tx.insert_step_if_absent(inst.id, "archive_files", join_group="archive_group")

    async with repo.transaction() as tx:
        members = await tx.lock_join_group(inst.id, "archive_group")
        assert [m.step_name for m in members] == ["archive_db", "archive_files"]
        assert await tx.lock_join_group(inst.id, "other") == []

    assert [s.step_name for s in await repo.list_steps(inst.id)] == [
        "prepare",
        "archive_db",
        "archive_files",
    ]


@pytest.mark.asyncio
async def test_rollback_discards_changes(repo):
    inst = await _instance(repo)
    async with repo.transaction() as tx:
        await tx.insert_step_if_absent(inst.id, "prepare")
        tx.rollback()
    assert await repo.get_step(inst.id, "prepare") is None

    with pytest.raises(RuntimeError):
        async with repo.transaction() as tx:
            await tx.insert_step_if_absent(inst.id, "prepare")
            raise RuntimeError("abort")
    assert await repo.get_step(inst.id, "prepare") is None


@pytest.mark.asyncio
async def test_context_journal(repo):
    inst = await _instance(repo)
    async with repo.transaction() as tx:
        await tx.append_context(inst.id, "prepare", {"orderId": 1})
        await tx.append_context(inst.id, "call_api_a", {"apiA": "ok"})
        await tx.append_context(inst.id, "generate_doc", {"documentId": 5})

    async with repo.transaction() as tx:
        entries = await tx.list_context(inst.id)
        until = await tx.list_context(inst.id, until_step="call_api_a")
        never = await tx.list_context(inst.id, until_step="finalize")

    assert [e.step_name for e in entries] == ["prepare", "call_api_a", "generate_doc"]
    assert [e.step_name for e in until] == ["prepare", "call_api_a"]
    assert never == []


@pytest.mark.asyncio
async def test_select_and_lock_due_jobs(repo):
    now = utcnow()
    async with repo.transaction() as tx:
        due = await tx.insert_job("order_fulfillment", "K-1", {}, now - timedelta(seconds=5), "START_PROCESS")
        later = await tx.insert_job("order_fulfillment", "K-2", {}, now + timedelta(hours=1), "START_PROCESS")

    async with repo.transaction() as tx:
        selected = await tx.select_due_jobs(now, 10)
    assert [j.id for j in selected] == [due.id]
    assert (await repo.get_job(due.id)).status == JobStatus.NEW

    async with repo.transaction() as tx:
        locked = await tx.lock_job(due.id)
        assert locked.status == JobStatus.LOCKED
        assert locked.locked_at is not None
        assert await tx.lock_job(due.id) is None
        assert await tx.select_due_jobs(now, 10) == []
        assert await tx.update_job_status(due.id, JobStatus.DONE, expected=JobStatus.NEW) == 0
        assert await tx.update_job_status(due.id, JobStatus.DONE, expected=JobStatus.LOCKED) == 1

    assert (await repo.get_job(due.id)).status == JobStatus.DONE
    assert (await repo.get_job(later.id)).status == JobStatus.NEW


@pytest.mark.asyncio
async def test_lock_job_is_undone_by_rollback(repo):
    async with repo.transaction() as tx:
        job = await tx.insert_job("order_fulfillment", "K-1", {}, utcnow(), "START_PROCESS")

    with pytest.raises(asyncio.CancelledError):
        async with repo.transaction() as tx:
            assert await tx.lock_job(job.id) is not None
            raise asyncio.CancelledError()

    assert (await repo.get_job(job.id)).status == JobStatus.NEW


@pytest.mark.asyncio
async def test_concurrent_locks_take_each_job_once(repo):
    now = utcnow()
    async with repo.transaction() as tx:
        for i in range(4):
            await tx.insert_job("order_fulfillment", f"K-{i}", {}, now, "START_PROCESS")

    async def lock_all():
        async with repo.transaction() as tx:
            ids = [j.id for j in await tx.select_due_jobs(now, 10)]
        taken = []
        for job_id in ids:
            async with repo.transaction() as tx:
                if await tx.lock_job(job_id) is not None:
                    taken.append(job_id)
        return taken

    first, second = await asyncio.gather(lock_all(), lock_all())
    assert not set(first) & set(second)
    assert len(first) + len(second) == 4


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository(), InMemoryProcessRepository)
    assert get_repository() is get_repository()

    sql = get_repository(database_url=f"sqlite:///{tmp_path}/x.db")
    assert isinstance(sql, SQLProcessRepository)
    assert sql.db.url.startswith("sqlite+aiosqlite://")

    with pytest.raises(ValueError):
        get_repository(database_url="mysql://localhost/db")
