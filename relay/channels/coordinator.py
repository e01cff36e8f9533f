"""Per-conversation run state, stop handling and queuing.

Owns the registry of conversation state keyed by channel id. Each entry
holds the conversation's ChannelQueue and, while a run is active, its
RunRecord. Inbound messages are admitted through ``submit()``;
externally sourced events go through the bounded ``enqueue_event()``.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum

from relay.channels.commands import ControlCommand, parse_message
from relay.channels.instructions import Typing
from relay.channels.protocol import (
    AgentEngine,
    Binding,
    CanonicalEvent,
    EventKind,
    RunOutcome,
)
from relay.channels.queue import ChannelQueue
from relay.channels.renderer import DEFAULT_HEADER, RenderSettings, RenderStateMachine
from relay.config import EVENT_QUEUE_CAPACITY
from relay.core.errors import RunStateError
from relay.core.logging import get_logger

_log = get_logger("channels.coordinator")

NOTHING_RUNNING_NOTICE = "_Nothing running_"
ALREADY_WORKING_NOTICE = "_Already working. Say `stop` to cancel._"

_EVENT_NAME_RE = re.compile(r"^\[EVENT:([^:\]]+)")


class StopResult(str, Enum):
    STOPPING = "stopping"
    NOTHING_TO_STOP = "nothing_to_stop"


class SubmitResult(str, Enum):
    QUEUED = "queued"
    BUSY = "busy"
    STOPPING = "stopping"
    NOTHING_TO_STOP = "nothing_to_stop"


@dataclass
class RunRecord:
    """Ephemeral state of one active run."""

    channel_id: str
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    stop_requested: bool = False
    stop_marker: str | None = None
    renderer: RenderStateMachine | None = None
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class ChannelState:
    channel_id: str
    queue: ChannelQueue
    run: RunRecord | None = None

    @property
    def running(self) -> bool:
        return self.run is not None


def event_header(event: CanonicalEvent) -> str:
    """Status header for a run: scheduled events announce their name."""
    if event.kind != EventKind.SCHEDULED:
        return DEFAULT_HEADER
    match = _EVENT_NAME_RE.match(event.text)
    name = match.group(1) if match else "scheduled"
    return f"Starting event: {name}"


class RunCoordinator:
    """Tracks which conversations are running and drives their runs."""

    def __init__(
        self,
        engine: AgentEngine,
        *,
        capacity: int = EVENT_QUEUE_CAPACITY,
        render_settings: RenderSettings | None = None,
    ) -> None:
        self._engine = engine
        self._capacity = capacity
        self._render_settings = render_settings
        self._channels: dict[str, ChannelState] = {}

    # ── Registry ────────────────────────────────────────────

    def state(self, channel_id: str) -> ChannelState:
        """Return the conversation's state, creating it on first use."""
        st = self._channels.get(channel_id)
        if st is None:
            st = ChannelState(channel_id, ChannelQueue(channel_id, capacity=self._capacity))
            self._channels[channel_id] = st
        return st

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    def is_running(self, channel_id: str) -> bool:
        st = self._channels.get(channel_id)
        return st is not None and st.running

    def current_run(self, channel_id: str) -> RunRecord | None:
        st = self._channels.get(channel_id)
        return st.run if st else None

    # ── Run lifecycle ───────────────────────────────────────

    def begin_run(self, channel_id: str) -> RunRecord:
        st = self.state(channel_id)
        if st.run is not None:
            raise RunStateError(f"Run already active for {channel_id}", channel_id=channel_id)
        st.run = RunRecord(channel_id)
        return st.run

    async def request_stop(self, channel_id: str) -> StopResult:
        """Signal the active run to abort and show the stop indicator.

        On an idle conversation nothing is mutated.
        """
        run = self.current_run(channel_id)
        if run is None:
            return StopResult.NOTHING_TO_STOP
        run.stop_requested = True
        run.abort.set()
        _log.info("RUN stop requested", channel=channel_id)
        if run.renderer is not None:
            run.stop_marker = await run.renderer.show_stopping()
        return StopResult.STOPPING

    async def complete_run(self, channel_id: str, outcome: RunOutcome) -> None:
        st = self._channels.get(channel_id)
        if st is None or st.run is None:
            return
        run, st.run = st.run, None
        if outcome == RunOutcome.ABORTED and run.stop_requested and run.renderer is not None:
            await run.renderer.show_stopped()

    async def run_event(
        self, event: CanonicalEvent, binding: Binding
    ) -> RunOutcome:
        """Execute one event to completion on its conversation.

        Engine exceptions are logged and end the run as FAILED; the
        conversation always returns to idle.
        """
        channel_id = event.channel_id
        run = self.begin_run(channel_id)
        renderer = RenderStateMachine(
            binding,
            channel_id,
            header=event_header(event),
            settings=self._render_settings,
        )
        run.renderer = renderer
        _log.info(
            "RUN start",
            channel=channel_id,
            platform=binding.platform.value,
            kind=event.kind.value,
            text=event.text[:50],
        )

        outcome = RunOutcome.FAILED
        try:
            await renderer.apply(Typing(True))
            outcome = await self._engine.run(
                event,
                format_instructions=binding.format_instructions,
                sink=renderer.apply,
                abort=run.abort,
            )
        except Exception as e:
            _log.exception("RUN error", channel=channel_id, error=str(e))
            outcome = RunOutcome.FAILED
        finally:
            await renderer.finalize()
            await self.complete_run(channel_id, outcome)
            try:
                await binding.end_run(event, outcome)
            except Exception as e:
                _log.warning("RUN completion hook failed", channel=channel_id, error=str(e))

        elapsed_ms = (time.monotonic() - run.started_at) * 1000
        _log.info(
            "RUN done",
            channel=channel_id,
            outcome=outcome.value,
            dur_ms=round(elapsed_ms),
        )
        return outcome

    # ── Admission ───────────────────────────────────────────

    def enqueue_run(self, event: CanonicalEvent, binding: Binding) -> asyncio.Future:
        """Queue a run without capacity limits; the future resolves with its outcome."""
        return self.state(event.channel_id).queue.enqueue(
            lambda: self.run_event(event, binding)
        )

    def enqueue_event(self, event: CanonicalEvent, binding: Binding) -> bool:
        """Bounded enqueue for externally sourced events.

        Returns False and drops the event when the conversation already has
        ``capacity`` external events queued or running.
        """
        queue = self.state(event.channel_id).queue
        accepted = queue.offer(lambda: self.run_event(event, binding))
        if accepted:
            _log.info(
                "QUEUE event accepted",
                channel=event.channel_id,
                depth=queue.external,
            )
        else:
            _log.warning(
                "QUEUE event discarded",
                channel=event.channel_id,
                text=event.text[:50],
            )
        return accepted

    async def submit(self, event: CanonicalEvent, binding: Binding) -> SubmitResult:
        """Admit one inbound user message.

        A bare ``stop`` aborts the active run. Any other message on a busy
        conversation gets a short notice and is not queued.
        """
        channel_id = event.channel_id
        parsed = parse_message(event.text)

        if parsed.command == ControlCommand.STOP:
            result = await self.request_stop(channel_id)
            if result == StopResult.NOTHING_TO_STOP:
                await self._notify(binding, channel_id, NOTHING_RUNNING_NOTICE)
            return SubmitResult(result.value)

        if self.is_running(channel_id):
            _log.info("RUN busy", channel=channel_id)
            await self._notify(binding, channel_id, ALREADY_WORKING_NOTICE)
            return SubmitResult.BUSY

        self.enqueue_run(event, binding)
        return SubmitResult.QUEUED

    async def shutdown(self) -> None:
        """Abort active runs and cancel every conversation's queue."""
        for st in self._channels.values():
            if st.run is not None:
                st.run.abort.set()
            st.queue.close()

    async def _notify(self, binding: Binding, channel_id: str, text: str) -> None:
        try:
            await binding.post(channel_id, text)
        except Exception as e:
            _log.warning("RUN notice failed", channel=channel_id, error=str(e))
