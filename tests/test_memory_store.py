"""Tests for MemoryStore transactions and queries."""

import asyncio

import pytest

from herald.core.errors import TransactionConflictError
from herald.store.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


async def test_create_if_absent_only_once(store):
    assert await store.create_if_absent("events", "e1", {"n": 1})
    assert not await store.create_if_absent("events", "e1", {"n": 2})
    assert await store.get("events", "e1") == {"n": 1}


async def test_get_returns_copies(store):
    await store.set("events", "e1", {"tags": ["a"]})
    doc = await store.get("events", "e1")
    doc["tags"].append("b")
    assert await store.get("events", "e1") == {"tags": ["a"]}


async def test_set_merge(store):
    await store.set("jobs", "j1", {"status": "queued", "attempts": 0})
    await store.set("jobs", "j1", {"status": "sent"}, merge=True)
    assert await store.get("jobs", "j1") == {"status": "sent", "attempts": 0}
    await store.set("jobs", "j1", {"status": "failed"})
    assert await store.get("jobs", "j1") == {"status": "failed"}


async def test_transaction_writes_atomically(store):
    await store.set("counters", "c", {"n": 1})

    async def bump(tx):
        doc = await tx.get("counters", "c")
        tx.set("counters", "c", {"n": doc["n"] + 1})
        tx.set("audit", "c", {"last": doc["n"] + 1})
        return doc["n"] + 1

    assert await store.run_transaction(bump) == 2
    assert await store.get("counters", "c") == {"n": 2}
    assert await store.get("audit", "c") == {"last": 2}


@pytest.mark.timeout(5)
async def test_concurrent_increments_do_not_lose_updates(store):
    await store.set("counters", "c", {"n": 0})

    async def bump(tx):
        doc = await tx.get("counters", "c")
        tx.set("counters", "c", {"n": doc["n"] + 1})

    await asyncio.gather(*(store.run_transaction(bump, max_attempts=50) for _ in range(10)))
    assert (await store.get("counters", "c"))["n"] == 10
    assert store.conflicts > 0


async def test_conflicting_claims_only_one_wins(store):
    """Only one of N racing claims sees the document still unclaimed."""
    await store.set("events", "e1", {"status": "pending", "attempts": 0})

    async def claim(tx):
        doc = await tx.get("events", "e1")
        if doc["attempts"] > 0:
            return False
        tx.set("events", "e1", {**doc, "attempts": doc["attempts"] + 1})
        return True

    results = await asyncio.gather(*(store.run_transaction(claim) for _ in range(5)))
    assert results.count(True) == 1
    assert (await store.get("events", "e1"))["attempts"] == 1


async def test_gives_up_after_max_attempts(store):
    await store.set("counters", "c", {"n": 0})

    async def always_conflicts(tx):
        await tx.get("counters", "c")
        await store.set("counters", "c", {"n": 99})

    with pytest.raises(TransactionConflictError) as exc_info:
        await store.run_transaction(always_conflicts, max_attempts=3)
    assert exc_info.value.attempts == 3


async def test_reading_missing_document_still_conflicts_on_create(store):
    async def create(tx):
        if await tx.get("events", "e1") is None:
            await store.create_if_absent("events", "e1", {"by": "other"})
            tx.set("events", "e1", {"by": "tx"})

    with pytest.raises(TransactionConflictError):
        await store.run_transaction(create, max_attempts=1)
    assert await store.get("events", "e1") == {"by": "other"}


async def test_query_filters_orders_and_limits(store):
    await store.set("jobs", "a", {"status": "queued", "created_at": "2026-03-02T10:00:00+00:00"})
    await store.set("jobs", "b", {"status": "queued", "created_at": "2026-03-02T09:00:00+00:00"})
    await store.set("jobs", "c", {"status": "sent", "created_at": "2026-03-02T08:00:00+00:00"})
    await store.set("jobs", "d", {"status": "queued", "created_at": "2026-03-02T11:00:00+00:00"})

    rows = await store.query("jobs", "status", "queued", order_by="created_at", limit=2)
    assert [doc_id for doc_id, _ in rows] == ["b", "a"]

    rows = await store.query("jobs", "status", "queued", descending=True, limit=10)
    assert [doc_id for doc_id, _ in rows] == ["d", "a", "b"]


async def test_query_unknown_collection(store):
    assert await store.query("nothing", "status", "queued") == []
