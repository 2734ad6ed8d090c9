"""Tests for the concurrency pool."""

import asyncio

import pytest

from docgen.engine import ConcurrencyPool, fan_out


async def settle(rounds: int = 10) -> None:
    """Let every ready task run until it blocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestConcurrencyPool:
    """Tests for ConcurrencyPool."""

    async def test_fifo_admission(self):
        """With limit 2, tasks A-E are admitted in submission order."""
        pool = ConcurrencyPool(limit=2)
        gates = {name: asyncio.Event() for name in "ABCDE"}
        admitted: list[str] = []

        async def worker(name: str) -> None:
            async with pool.slot():
                admitted.append(name)
                await gates[name].wait()

        tasks = [asyncio.create_task(worker(name)) for name in "ABCDE"]
        await settle()
        assert admitted == ["A", "B"]
        assert pool.active == 2
        assert pool.waiting == 3

        gates["B"].set()
        await settle()
        assert admitted == ["A", "B", "C"]

        gates["A"].set()
        await settle()
        assert admitted == ["A", "B", "C", "D"]

        for gate in gates.values():
            gate.set()
        await asyncio.gather(*tasks)
        assert admitted == ["A", "B", "C", "D", "E"]
        assert pool.active == 0
        assert pool.waiting == 0

    async def test_never_exceeds_limit(self):
        pool = ConcurrencyPool(limit=3)
        peak = 0

        async def worker() -> None:
            nonlocal peak
            async with pool.slot():
                peak = max(peak, pool.active)
                await asyncio.sleep(0.001)

        await asyncio.gather(*(worker() for _ in range(20)))
        assert peak == 3

    async def test_raising_limit_admits_waiters(self):
        pool = ConcurrencyPool(limit=1)
        await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await settle()
        assert not waiter.done()

        pool.set_limit(2)
        await settle()
        assert waiter.done()
        assert pool.active == 2

    async def test_lowering_limit_applies_to_future_admissions(self):
        pool = ConcurrencyPool(limit=2)
        await pool.acquire()
        await pool.acquire()
        pool.set_limit(1)
        assert pool.active == 2

        waiter = asyncio.create_task(pool.acquire())
        pool.release()
        await settle()
        assert not waiter.done()

        pool.release()
        await settle()
        assert waiter.done()
        assert pool.active == 1

    async def test_limit_clamped_to_one(self):
        pool = ConcurrencyPool(limit=0)
        assert pool.limit == 1
        pool.set_limit(-5)
        assert pool.limit == 1

    async def test_cancelled_waiter_leaves_queue(self):
        pool = ConcurrencyPool(limit=1)
        await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await settle()
        assert pool.waiting == 1

        waiter.cancel()
        await settle()
        assert pool.waiting == 0

        pool.release()
        assert pool.active == 0

    async def test_release_without_acquire(self):
        pool = ConcurrencyPool(limit=1)
        with pytest.raises(RuntimeError):
            pool.release()

    async def test_slot_released_on_error(self):
        pool = ConcurrencyPool(limit=1)
        with pytest.raises(ValueError):
            async with pool.slot():
                raise ValueError("boom")
        assert pool.active == 0


class TestFanOut:
    """Tests for fan_out."""

    async def test_results_keep_input_order(self):
        async def worker(item: int, index: int) -> tuple[int, int]:
            await asyncio.sleep(0.001 * (5 - item))
            return item * 10, index

        results = await fan_out([1, 2, 3, 4], worker, limit=4)
        assert results == [(10, 0), (20, 1), (30, 2), (40, 3)]

    async def test_respects_limit(self):
        running = 0
        peak = 0

        async def worker(item: int, index: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.001)
            running -= 1
            return item

        await fan_out(range(10), worker, limit=2)
        assert peak == 2

    async def test_first_error_propagates(self):
        started: list[int] = []

        async def worker(item: int, index: int) -> int:
            started.append(item)
            if item == 1:
                raise ValueError("bad item")
            await asyncio.sleep(0.01)
            return item

        with pytest.raises(ValueError, match="bad item"):
            await fan_out([0, 1, 2, 3], worker, limit=1)
        assert 3 not in started
