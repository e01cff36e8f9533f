"""Tests for the per-conversation ChannelQueue."""

from __future__ import annotations

import asyncio

import pytest

from relay.channels.queue import ChannelQueue


# ── Sequential drain ────────────────────────────────────────


class TestDrain:
    async def test_items_run_in_fifo_order(self) -> None:
        q = ChannelQueue("c1")
        order: list[int] = []

        def work(i: int):
            async def _w() -> int:
                await asyncio.sleep(0)
                order.append(i)
                return i

            return _w

        futures = [q.enqueue(work(i)) for i in range(5)]
        results = await asyncio.gather(*futures)
        assert order == [0, 1, 2, 3, 4]
        assert results == [0, 1, 2, 3, 4]

    async def test_items_never_overlap(self) -> None:
        q = ChannelQueue("c1")
        active = 0
        peak = 0

        async def work() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for _ in range(4):
            q.enqueue(work)
        await q.join()
        assert peak == 1

    async def test_failing_item_does_not_stop_the_queue(self) -> None:
        q = ChannelQueue("c1")
        ran: list[str] = []

        async def boom() -> None:
            raise RuntimeError("boom")

        async def ok() -> str:
            ran.append("ok")
            return "ok"

        failed = q.enqueue(boom)
        after = q.enqueue(ok)
        assert await failed is None
        assert await after == "ok"
        assert ran == ["ok"]

    async def test_enqueue_while_draining_joins_same_loop(self) -> None:
        q = ChannelQueue("c1")
        seen: list[str] = []

        async def first() -> None:
            q.enqueue(second)
            seen.append("first")

        async def second() -> None:
            seen.append("second")

        q.enqueue(first)
        await q.join()
        assert seen == ["first", "second"]
        assert not q.is_draining

    async def test_distinct_queues_drain_independently(self) -> None:
        gate = asyncio.Event()
        slow_q = ChannelQueue("slow")
        fast_q = ChannelQueue("fast")

        async def blocked() -> str:
            await gate.wait()
            return "slow"

        async def quick() -> str:
            return "fast"

        slow = slow_q.enqueue(blocked)
        fast = fast_q.enqueue(quick)
        assert await asyncio.wait_for(fast, timeout=1) == "fast"
        assert not slow.done()
        gate.set()
        assert await slow == "slow"


# ── Bounded offer ───────────────────────────────────────────


class TestOffer:
    async def test_capacity_plus_one_rejects_exactly_one(self) -> None:
        gate = asyncio.Event()
        q = ChannelQueue("c1", capacity=5)
        executed = 0

        async def work() -> None:
            nonlocal executed
            await gate.wait()
            executed += 1

        accepted = [q.offer(work) for _ in range(6)]
        assert accepted == [True] * 5 + [False]

        gate.set()
        await q.join()
        assert executed == 5
        assert q.external == 0

    async def test_capacity_frees_after_completion(self) -> None:
        q = ChannelQueue("c1", capacity=1)

        async def work() -> None:
            return None

        assert q.offer(work) is True
        assert q.offer(work) is False
        await q.join()
        assert q.offer(work) is True
        await q.join()

    async def test_unbounded_enqueue_does_not_count_against_capacity(self) -> None:
        gate = asyncio.Event()
        q = ChannelQueue("c1", capacity=1)

        async def blocked() -> None:
            await gate.wait()

        q.enqueue(blocked)
        q.enqueue(blocked)
        assert q.offer(blocked) is True
        gate.set()
        await q.join()

    async def test_close_cancels_waiting_items(self) -> None:
        gate = asyncio.Event()
        q = ChannelQueue("c1")

        async def blocked() -> None:
            await gate.wait()

        running = q.enqueue(blocked)
        waiting = q.enqueue(blocked)
        await asyncio.sleep(0)
        q.close()
        await asyncio.sleep(0)
        assert waiting.cancelled()
        assert running.cancelled()
        assert q.pending == 0


@pytest.mark.asyncio
async def test_join_on_idle_queue_returns_immediately() -> None:
    q = ChannelQueue("idle")
    await asyncio.wait_for(q.join(), timeout=0.5)
