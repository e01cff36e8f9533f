"""Channel protocol: shared types between bindings, the coordinator and the renderer.

A Binding is the thin per-platform transport: it normalizes inbound
payloads into CanonicalEvent and executes message primitives, each of
which returns an opaque string handle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from fastapi import Request
    from starlette.responses import Response

    from relay.channels.instructions import RenderInstruction


class Platform(str, Enum):
    """Supported messaging platforms."""

    TELEGRAM = "telegram"
    SLACK = "slack"
    EMAIL = "email"
    WEB = "web"
    HEARTBEAT = "heartbeat"


class EventKind(str, Enum):
    MENTION = "mention"
    DIRECT_MESSAGE = "direct-message"
    SCHEDULED = "scheduled"


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class Attachment:
    """A file received with an inbound message, already stored locally."""

    name: str
    local_path: str


@dataclass(frozen=True)
class CanonicalEvent:
    """Platform-agnostic inbound occurrence, produced once by a binding."""

    kind: EventKind
    channel_id: str
    timestamp: str
    user_id: str
    text: str
    attachments: tuple[Attachment, ...] = ()
    user_name: str = ""


@dataclass(frozen=True)
class ChannelCapabilities:
    """Declares what a binding supports."""

    max_message_length: int = 4096
    threads: bool = False
    typing_indicator: bool = False
    uploads: bool = True


@dataclass
class HealthStatus:
    """Health check result for a binding."""

    healthy: bool
    platform: Platform
    latency_ms: float = 0.0
    details: str = ""


RequestHandler = Callable[["Request"], Awaitable["Response"]]
RenderSink = Callable[["RenderInstruction"], Awaitable[None]]


@runtime_checkable
class Binding(Protocol):
    """Protocol for platform bindings.

    Each binding must:
    - execute post/edit/delete/upload, returning opaque string handles
    - normalize inbound payloads into CanonicalEvent
    - report readiness (start() completing) before its route goes live
    """

    @property
    def platform(self) -> Platform: ...

    @property
    def capabilities(self) -> ChannelCapabilities: ...

    @property
    def format_instructions(self) -> str: ...

    @property
    def route_path(self) -> str | None:
        """Gateway path served by this binding, or None for internal bindings."""
        ...

    async def start(self) -> None:
        """Connect to the platform. Returning means the binding is ready."""
        ...

    async def stop(self) -> None: ...

    async def handle_request(self, request: Request) -> Response:
        """Verify and normalize one inbound HTTP request."""
        ...

    async def post(self, channel_id: str, text: str) -> str: ...

    async def edit(self, channel_id: str, handle: str, text: str) -> None: ...

    async def delete(self, channel_id: str, handle: str) -> None: ...

    async def upload(self, channel_id: str, path: str, title: str | None = None) -> str: ...

    async def post_detail(self, channel_id: str, parent: str | None, text: str) -> str | None:
        """Post to the secondary detail surface (thread, inline log) or drop it."""
        ...

    async def send_typing(self, channel_id: str) -> None: ...

    def log_bot_response(self, channel_id: str, text: str, handle: str) -> None: ...

    async def end_run(self, event: CanonicalEvent, outcome: RunOutcome) -> None:
        """Settle per-run state after rendering finished, e.g. send a batched reply."""
        ...

    async def health_check(self) -> HealthStatus: ...


@runtime_checkable
class AgentEngine(Protocol):
    """The reasoning engine that turns one event into render instructions."""

    async def run(
        self,
        event: CanonicalEvent,
        *,
        format_instructions: str,
        sink: RenderSink,
        abort: asyncio.Event,
    ) -> RunOutcome:
        """Emit instructions to ``sink`` in order and return the outcome.

        ``abort`` is set when a stop is requested; the engine observes it
        between its own steps and returns ``RunOutcome.ABORTED``.
        """
        ...


@dataclass
class OutboundMessage:
    """Input of the cross-conversation send capability."""

    channel_id: str
    text: str
    attachments: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
