import asyncio

import pytest

from chunkflow.services.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock()
    active = []
    overlap = []

    async def worker(n):
        async with locks.hold("a"):
            if active:
                overlap.append(n)
            active.append(n)
            await asyncio.sleep(0.01)
            active.remove(n)

    await asyncio.gather(*(worker(n) for n in range(5)))
    assert overlap == []


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    locks = KeyedLock()
    inside_b = asyncio.Event()

    async def hold_a():
        async with locks.hold("a"):
            await asyncio.wait_for(inside_b.wait(), timeout=1)

    async def hold_b():
        async with locks.hold("b"):
            inside_b.set()

    await asyncio.gather(hold_a(), hold_b())


@pytest.mark.asyncio
async def test_idle_locks_are_dropped():
    locks = KeyedLock()
    async with locks.hold("a"):
        assert locks.locked("a")
        assert len(locks) == 1
    assert not locks.locked("a")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("a"):
            raise RuntimeError("boom")
    assert len(locks) == 0
