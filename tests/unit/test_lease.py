from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from mandate_rail.concurrency.lease import WorkLease, acquire_work_lease
from mandate_rail.store.base import Collection
from mandate_rail.store.local import MemoryStore
from tests.conftest import NonAtomicStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.mark.anyio
async def test_concurrent_acquire_has_one_winner() -> None:
    store = MemoryStore(interleave=True)
    col = Collection(store, "WorkLease")

    results = await asyncio.gather(
        *(acquire_work_lease(col, key="settlement:i1", holder=f"h{i}", ttl_ms=60_000, now=NOW) for i in range(5))
    )

    winners = [r for r in results if r.acquired]
    assert len(winners) == 1
    assert len(store.records("WorkLease")) == 1


@pytest.mark.anyio
async def test_holder_reacquires_and_others_wait_until_expiry() -> None:
    lease = WorkLease(Collection(MemoryStore(), "WorkLease"))

    first = await lease.acquire(key="k", holder="a", ttl_ms=60_000, now=NOW)
    assert first.acquired is True

    again = await lease.acquire(key="k", holder="a", ttl_ms=60_000, now=NOW + timedelta(seconds=1))
    assert again.acquired is True

    blocked = await lease.acquire(key="k", holder="b", ttl_ms=60_000, now=NOW + timedelta(seconds=2))
    assert blocked.acquired is False
    assert blocked.holder == "a"

    taken = await lease.acquire(key="k", holder="b", ttl_ms=60_000, now=NOW + timedelta(minutes=5))
    assert taken.acquired is True
    assert taken.holder == "b"


@pytest.mark.anyio
async def test_acquire_requires_key_and_holder() -> None:
    lease = WorkLease(Collection(MemoryStore(), "WorkLease"))
    with pytest.raises(ValueError):
        await lease.acquire(key="", holder="a")


@pytest.mark.anyio
async def test_concurrent_acquire_without_atomic_store_has_one_winner() -> None:
    store = NonAtomicStore()
    col = Collection(store, "WorkLease")

    results = await asyncio.gather(
        *(acquire_work_lease(col, key="settlement:i2", holder=f"h{i}", ttl_ms=60_000, now=NOW) for i in range(5))
    )

    winners = [r for r in results if r.acquired]
    assert len(winners) == 1
    # the store let duplicates through; everyone defers to the oldest record
    rows = store.records("WorkLease")
    assert len(rows) > 1
    assert {r.holder for r in results} == {winners[0].holder}
    assert rows[0]["holder"] == winners[0].holder


@pytest.mark.anyio
async def test_concurrent_takeover_without_atomic_store_has_one_winner() -> None:
    store = NonAtomicStore()
    col = Collection(store, "WorkLease")
    await WorkLease(col).acquire(key="k", holder="old", ttl_ms=1000, now=NOW)

    later = NOW + timedelta(minutes=5)
    results = await asyncio.gather(
        *(acquire_work_lease(col, key="k", holder=f"h{i}", ttl_ms=60_000, now=later) for i in range(5))
    )

    winners = [r for r in results if r.acquired]
    assert len(winners) == 1
    [row] = store.records("WorkLease")
    assert row["holder"] == winners[0].holder
