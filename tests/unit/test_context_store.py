"""Tests for the append-only process context."""

import pytest

from stepwise.context_store import ContextStore
from stepwise.persistence import ContextEntry, InMemoryProcessRepository


async def _process(repo: InMemoryProcessRepository) -> int:
    async with repo.transaction() as tx:
        inst = await tx.insert_instance("order_fulfillment", "K-1", {})
    return inst.id


@pytest.mark.asyncio
async def test_later_entry_overwrites_colliding_key_shallowly():
    repo = InMemoryProcessRepository()
    store = ContextStore(repo)
    pid = await _process(repo)

    await store.append(pid, "call_api_a", {"result": {"a": 1, "b": 2}, "onlyA": True})
    await store.append(pid, "call_api_b", {"result": {"c": 3}})

    merged = await store.load(pid)
    assert merged == {"result": {"c": 3}, "onlyA": True}


@pytest.mark.asyncio
async def test_empty_payload_is_not_recorded():
    repo = InMemoryProcessRepository()
    store = ContextStore(repo)
    pid = await _process(repo)

    assert await store.append(pid, "archive", {}) is None
    assert await store.append(pid, "archive", None) is None
    assert await store.entries(pid) == []


@pytest.mark.asyncio
async def test_load_until_step_stops_at_last_write_of_step():
    repo = InMemoryProcessRepository()
    store = ContextStore(repo)
    pid = await _process(repo)

    await store.append(pid, "prepare", {"orderId": 7})
    await store.append(pid, "call_api_a", {"apiA": "ok"})
    await store.append(pid, "generate_doc", {"documentId": 1234})

    assert await store.load_until_step(pid, "call_api_a") == {"orderId": 7, "apiA": "ok"}
    assert await store.load_until_step(pid, "finalize") == {}


@pytest.mark.asyncio
async def test_entries_are_scoped_to_process():
    repo = InMemoryProcessRepository()
    store = ContextStore(repo)
    first = await _process(repo)
    async with repo.transaction() as tx:
        second = (await tx.insert_instance("order_fulfillment", "K-2", {})).id

    await store.append(first, "prepare", {"orderId": 1})
    await store.append(second, "prepare", {"orderId": 2})

    assert await store.load(first) == {"orderId": 1}
    assert [e.step_name for e in await store.entries(second)] == ["prepare"]


def test_merge_orders_by_id():
    entries = [
        ContextEntry(id=2, process_instance_id=1, step_name="b", payload={"k": "late"}),
        ContextEntry(id=1, process_instance_id=1, step_name="a", payload={"k": "early"}),
    ]
    assert ContextStore.merge(entries) == {"k": "late"}
