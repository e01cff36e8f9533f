"""Root conftest: fake binding and scripted agent engine shared by all tests."""

from __future__ import annotations

import asyncio
import itertools
from typing import Callable

import pytest

from relay.channels.base import BaseBinding
from relay.channels.protocol import (
    CanonicalEvent,
    ChannelCapabilities,
    EventKind,
    Platform,
    RunOutcome,
)
from relay.channels.transcript import Transcript
from relay.core.errors import TransportError


class FakeBinding(BaseBinding):
    """In-memory binding that records every primitive call in order.

    ``messages`` holds the live platform state (handle -> text). Failures are
    injected one-shot with ``fail_next("edit")`` or ``fail_next("delete", "3")``.
    With ``enforce_limit`` set, posts and edits longer than the declared
    ``max_message_length`` are rejected the way a platform rejects them.
    ``timeline`` records (op, loop time) for every message primitive.
    """

    platform = Platform.TELEGRAM
    capabilities = ChannelCapabilities(max_message_length=4096, threads=True, typing_indicator=True)
    format_instructions = "plain text"

    def __init__(
        self,
        transcript: Transcript,
        *,
        platform: Platform | None = None,
        route_path: str | None = None,
        capabilities: ChannelCapabilities | None = None,
        enforce_limit: bool = False,
    ) -> None:
        super().__init__(route_path=route_path, transcript=transcript)
        if platform is not None:
            self.platform = platform
        if capabilities is not None:
            self.capabilities = capabilities
        self.calls: list[tuple] = []
        self.messages: dict[str, str] = {}
        self.responses: list[tuple[str, str, str]] = []
        self.started = False
        self.start_error: Exception | None = None
        self._failures: dict[str, Exception] = {}
        self.enforce_limit = enforce_limit
        self.timeline: list[tuple[str, float]] = []
        self._ids = itertools.count(1)

    def fail_next(self, op: str, handle: str | None = None, exc: Exception | None = None) -> None:
        key = f"{op}:{handle}" if handle else op
        self._failures[key] = exc or TransportError(f"{op} failed", platform="fake")

    def _check(self, op: str, handle: str | None = None, text: str | None = None) -> None:
        self.timeline.append((op, asyncio.get_running_loop().time()))
        for key in (f"{op}:{handle}", op):
            exc = self._failures.pop(key, None)
            if exc is not None:
                raise exc
        if self.enforce_limit and text is not None and len(text) > self.capabilities.max_message_length:
            raise TransportError("message is too long", platform="fake")

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def post(self, channel_id: str, text: str) -> str:
        self._check("post", text=text)
        handle = str(next(self._ids))
        self.messages[handle] = text
        self.calls.append(("post", handle, text))
        return handle

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        self._check("edit", handle, text)
        if handle not in self.messages:
            raise TransportError("message to edit not found", platform="fake")
        self.messages[handle] = text
        self.calls.append(("edit", handle, text))

    async def delete(self, channel_id: str, handle: str) -> None:
        self._check("delete", handle)
        if handle not in self.messages:
            raise TransportError("message to delete not found", platform="fake")
        del self.messages[handle]
        self.calls.append(("delete", handle))

    async def upload(self, channel_id: str, path: str, title: str | None = None) -> str:
        self._check("upload")
        handle = str(next(self._ids))
        self.calls.append(("upload", handle, path, title))
        return handle

    async def post_detail(self, channel_id: str, parent: str | None, text: str) -> str | None:
        self._check("detail")
        handle = str(next(self._ids))
        self.calls.append(("detail", parent, text))
        return handle

    async def send_typing(self, channel_id: str) -> None:
        self.calls.append(("typing",))

    def log_bot_response(self, channel_id: str, text: str, handle: str) -> None:
        self.responses.append((channel_id, text, handle))
        super().log_bot_response(channel_id, text, handle)

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]


class ScriptedEngine:
    """Agent engine that replays a fixed instruction script.

    With ``gate`` set, each run blocks after its script until the gate opens
    or the run is aborted.
    """

    def __init__(
        self,
        script=(),
        *,
        outcome: RunOutcome = RunOutcome.COMPLETED,
        gate: asyncio.Event | None = None,
        error: Exception | None = None,
    ) -> None:
        self.script = list(script)
        self.outcome = outcome
        self.gate = gate
        self.error = error
        self.events: list[CanonicalEvent] = []
        self.format_instructions: list[str] = []
        self.active = 0
        self.max_active = 0

    async def run(self, event, *, format_instructions, sink, abort) -> RunOutcome:
        self.events.append(event)
        self.format_instructions.append(format_instructions)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for instruction in self.script:
                if abort.is_set():
                    return RunOutcome.ABORTED
                await sink(instruction)
            if self.gate is not None:
                waiters = {
                    asyncio.ensure_future(self.gate.wait()),
                    asyncio.ensure_future(abort.wait()),
                }
                try:
                    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for task in waiters:
                        task.cancel()
            if self.error is not None:
                raise self.error
            return RunOutcome.ABORTED if abort.is_set() else self.outcome
        finally:
            self.active -= 1


def make_event(
    text: str = "hello",
    channel_id: str = "42",
    kind: EventKind = EventKind.DIRECT_MESSAGE,
) -> CanonicalEvent:
    return CanonicalEvent(
        kind=kind,
        channel_id=channel_id,
        timestamp="1700000000",
        user_id="u1",
        text=text,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def transcript(tmp_path) -> Transcript:
    return Transcript(tmp_path / "transcripts")


@pytest.fixture
def make_binding(transcript):
    def _make(**kwargs) -> FakeBinding:
        return FakeBinding(transcript, **kwargs)

    return _make


@pytest.fixture
def binding(make_binding) -> FakeBinding:
    return make_binding()


@pytest.fixture
def engine_factory():
    return ScriptedEngine


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def until():
    return wait_until
