"""Shared behaviour for platform bindings.

Concrete bindings subclass BaseBinding and implement the message
primitives. The base class wires inbound events to the RunCoordinator and
writes the conversation transcript.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.responses import Response

from relay.channels.protocol import (
    CanonicalEvent,
    ChannelCapabilities,
    HealthStatus,
    Platform,
    RunOutcome,
)
from relay.channels.transcript import Transcript
from relay.core.errors import ProtocolError, TransportError
from relay.core.logging import get_logger

if TYPE_CHECKING:
    from relay.channels.coordinator import RunCoordinator, SubmitResult

_log = get_logger("bindings")


class BaseBinding:
    platform: Platform
    capabilities: ChannelCapabilities = ChannelCapabilities()
    format_instructions: str = ""

    def __init__(
        self,
        *,
        route_path: str | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        self._route_path = route_path
        self._transcript = transcript or Transcript()
        self._coordinator: RunCoordinator | None = None

    @property
    def route_path(self) -> str | None:
        return self._route_path

    @property
    def coordinator(self) -> RunCoordinator:
        if self._coordinator is None:
            raise RuntimeError(f"{self.platform.value} binding is not attached to a coordinator")
        return self._coordinator

    def attach(self, coordinator: RunCoordinator) -> None:
        self._coordinator = coordinator

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def health_check(self) -> HealthStatus:
        return HealthStatus(healthy=True, platform=self.platform)

    # ── Inbound ─────────────────────────────────────────────

    async def handle_request(self, request: Request) -> Response:
        raise ProtocolError("No inbound endpoint", http_status=404)

    async def receive(self, event: CanonicalEvent) -> SubmitResult:
        """Record a normalized inbound message and hand it to the coordinator."""
        _log.info(
            "BINDING inbound",
            platform=self.platform.value,
            channel=event.channel_id,
            kind=event.kind.value,
            user=event.user_name or event.user_id,
        )
        self._transcript.log_user(event)
        return await self.coordinator.submit(event, self)

    # ── Message primitives ──────────────────────────────────

    async def post(self, channel_id: str, text: str) -> str:
        raise NotImplementedError

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        raise NotImplementedError

    async def delete(self, channel_id: str, handle: str) -> None:
        raise NotImplementedError

    async def upload(self, channel_id: str, path: str, title: str | None = None) -> str:
        raise TransportError(
            f"Uploads are not supported on {self.platform.value}",
            platform=self.platform.value,
        )

    async def post_detail(self, channel_id: str, parent: str | None, text: str) -> str | None:
        return None

    async def send_typing(self, channel_id: str) -> None:
        return None

    def log_bot_response(self, channel_id: str, text: str, handle: str) -> None:
        self._transcript.log_bot(channel_id, text, handle)

    async def end_run(self, event: CanonicalEvent, outcome: RunOutcome) -> None:
        """Called once a run on one of this binding's conversations has settled."""
        return None
