"""Periodic heartbeat events on an internal conversation.

The heartbeat conversation has no platform behind it: its binding accepts
the message primitives, logs what would have been shown and returns
synthetic handles. A heartbeat run that wants to reach a person sends
through the CrossChannelRouter instead.
"""

from __future__ import annotations

import asyncio
import itertools
import time

from relay.channels.base import BaseBinding
from relay.channels.coordinator import RunCoordinator
from relay.channels.protocol import (
    CanonicalEvent,
    ChannelCapabilities,
    EventKind,
    Platform,
)
from relay.channels.transcript import Transcript
from relay.config import HEARTBEAT_CHANNEL, HEARTBEAT_INTERVAL_SECONDS
from relay.core.logging import get_logger

_log = get_logger("channels.scheduler")

HEARTBEAT_PROMPT = (
    "[EVENT:heartbeat:periodic] Periodic check-in. Review pending work and "
    "notify the relevant channel only if something needs attention."
)


class HeartbeatBinding(BaseBinding):
    """Silent binding for the internal heartbeat conversation."""

    platform = Platform.HEARTBEAT
    capabilities = ChannelCapabilities(max_message_length=100_000, uploads=False)
    format_instructions = "Output here is not shown to anyone."

    def __init__(self, *, transcript: Transcript | None = None) -> None:
        super().__init__(route_path=None, transcript=transcript)
        self._ids = itertools.count(1)

    async def post(self, channel_id: str, text: str) -> str:
        handle = f"hb-{next(self._ids)}"
        _log.debug("HEARTBEAT post", channel=channel_id, handle=handle, text=text[:80])
        return handle

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        _log.debug("HEARTBEAT edit", channel=channel_id, handle=handle, text=text[:80])

    async def delete(self, channel_id: str, handle: str) -> None:
        return None


class HeartbeatScheduler:
    def __init__(
        self,
        coordinator: RunCoordinator,
        binding: HeartbeatBinding,
        *,
        channel_id: str = HEARTBEAT_CHANNEL,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        prompt: str = HEARTBEAT_PROMPT,
    ) -> None:
        self._coordinator = coordinator
        self._binding = binding
        self.channel_id = channel_id
        self.interval = interval
        self._prompt = prompt
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> bool:
        """Enqueue one heartbeat event; False when the queue is full."""
        event = CanonicalEvent(
            kind=EventKind.SCHEDULED,
            channel_id=self.channel_id,
            timestamp=str(int(time.time() * 1000)),
            user_id="system",
            text=self._prompt,
        )
        return self._coordinator.enqueue_event(event, self._binding)

    async def start(self) -> None:
        if self.interval <= 0:
            _log.info("HEARTBEAT disabled")
            return
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="heartbeat")
        _log.info("HEARTBEAT started", interval_s=self.interval, channel=self.channel_id)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.trigger()
