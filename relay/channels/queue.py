"""Per-conversation work queue.

One FIFO per conversation, drained by a single task that awaits each work
item to completion before starting the next. Distinct queues drain
independently. The same primitive serializes a renderer's platform
operations, so it is also used with a future per item.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

from relay.config import EVENT_QUEUE_CAPACITY
from relay.core.logging import get_logger

_log = get_logger("channels.queue")

Work = Callable[[], Awaitable[Any]]


class ChannelQueue:
    """Sequential FIFO of async work items for one conversation."""

    def __init__(self, channel_id: str, *, capacity: int = EVENT_QUEUE_CAPACITY) -> None:
        self.channel_id = channel_id
        self.capacity = capacity
        self._items: deque[tuple[Work, asyncio.Future]] = deque()
        self._drain_task: asyncio.Task | None = None
        self._external = 0

    @property
    def pending(self) -> int:
        """Items waiting to start (excludes the one in flight)."""
        return len(self._items)

    @property
    def external(self) -> int:
        """Externally sourced items queued or in flight."""
        return self._external

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue(self, work: Work) -> asyncio.Future:
        """Append ``work`` and start the drain loop if idle.

        Returns a future resolved with the work's result once it has run.
        A failing item is logged and resolves the future with None.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._items.append((work, future))
        if not self.is_draining:
            self._drain_task = loop.create_task(
                self._drain(), name=f"queue:{self.channel_id}"
            )
        return future

    def offer(self, work: Work) -> bool:
        """Bounded enqueue for externally sourced work.

        Returns False without queuing when ``capacity`` external items are
        already queued or running. Older items are never displaced.
        """
        if self._external >= self.capacity:
            _log.warning(
                "QUEUE full, rejecting",
                channel=self.channel_id,
                capacity=self.capacity,
            )
            return False
        self._external += 1

        async def _counted() -> Any:
            try:
                return await work()
            finally:
                self._external -= 1

        self.enqueue(_counted)
        return True

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is in flight."""
        while self.is_draining:
            await asyncio.wait({self._drain_task})

    def close(self) -> None:
        """Cancel the drain loop and every waiting item."""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        while self._items:
            _, future = self._items.popleft()
            future.cancel()
        self._external = 0

    async def _drain(self) -> None:
        while self._items:
            work, future = self._items.popleft()
            if future.cancelled():
                continue
            try:
                result = await work()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                _log.exception("QUEUE work failed", channel=self.channel_id, error=str(e))
                if not future.done():
                    future.set_result(None)
            else:
                if not future.done():
                    future.set_result(result)
