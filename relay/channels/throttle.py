"""Deadline scheduling for rate-limited message edits."""

from __future__ import annotations

import asyncio
from typing import Callable


class DeadlineThrottle:
    """Minimum-interval gate with at most one deferred run.

    ``request()`` answers whether an operation may run now. When the last
    operation is more recent than ``interval``, it arms a single timer for
    the next allowed instant instead; further requests before that deadline
    share the same timer. The timer calls ``on_deadline``, which is expected
    to re-check and perform the operation.
    """

    def __init__(self, interval: float, on_deadline: Callable[[], None]) -> None:
        self.interval = interval
        self._on_deadline = on_deadline
        self._last: float | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def remaining(self) -> float:
        if self._last is None:
            return 0.0
        loop = asyncio.get_running_loop()
        return max(0.0, self._last + self.interval - loop.time())

    def request(self) -> bool:
        wait = self.remaining()
        if wait <= 0:
            self.cancel()
            return True
        if self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(wait, self._fire)
        return False

    def mark(self) -> None:
        """Record that an operation just ran."""
        self._last = asyncio.get_running_loop().time()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        self._on_deadline()
