"""Unit tests for per-key asyncio locking."""

import asyncio

import pytest

from gatekeeper.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_runs_in_arrival_order(self) -> None:
        locks = KeyedLock()
        order: list[int] = []

        async def work(i: int) -> None:
            async with locks.hold(("g1", "u1")):
                await asyncio.sleep(0)
                order.append(i)

        await asyncio.gather(*(work(i) for i in range(5)))
        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self) -> None:
        locks = KeyedLock()
        release = asyncio.Event()

        async def hold_first() -> None:
            async with locks.hold(("g1", "u1")):
                await release.wait()

        holder = asyncio.create_task(hold_first())
        await asyncio.sleep(0)
        assert locks.is_locked(("g1", "u1"))

        async with locks.hold(("g1", "u2")):
            assert locks.is_locked(("g1", "u2"))
            assert len(locks) == 2

        release.set()
        await holder

    @pytest.mark.asyncio
    async def test_entries_dropped_when_idle(self) -> None:
        locks = KeyedLock()
        async with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.is_locked("a")

    @pytest.mark.asyncio
    async def test_entry_released_on_error(self) -> None:
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
