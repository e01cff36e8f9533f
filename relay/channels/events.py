"""Inbound endpoint for externally sourced events.

Other processes (cron jobs, watchers, services) POST
``{"channelId": ..., "text": ...}`` to have an event run on a
conversation. Delivery goes through the bounded queue; a full queue is
answered with 429.
"""

from __future__ import annotations

import hmac
import time

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from relay.channels.coordinator import RunCoordinator
from relay.channels.protocol import Binding, CanonicalEvent, EventKind
from relay.channels.router import CrossChannelRouter
from relay.config import EVENTS_TOKEN
from relay.core.errors import CapacityError, ProtocolError
from relay.core.logging import get_logger

_log = get_logger("channels.events")


class EventsEndpoint:
    def __init__(
        self,
        coordinator: RunCoordinator,
        router: CrossChannelRouter,
        *,
        token: str | None = EVENTS_TOKEN,
        extra: dict[str, Binding] | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._router = router
        self._token = token
        # Channels with no routing rule, e.g. the heartbeat conversation.
        self._extra = dict(extra or {})

    def resolve(self, channel_id: str) -> Binding | None:
        return self._extra.get(channel_id) or self._router.resolve(channel_id)

    async def __call__(self, request: Request) -> Response:
        if self._token:
            auth = request.headers.get("Authorization", "")
            if not hmac.compare_digest(auth.encode(), f"Bearer {self._token}".encode()):
                raise ProtocolError("Invalid token", http_status=401)
        try:
            payload = await request.json()
        except ValueError as e:
            raise ProtocolError("Invalid JSON body") from e
        if not isinstance(payload, dict):
            raise ProtocolError("Body must be a JSON object")

        channel_id = payload.get("channelId")
        text = payload.get("text")
        if not isinstance(channel_id, str) or not channel_id:
            raise ProtocolError("Missing 'channelId'")
        if not isinstance(text, str) or not text.strip():
            raise ProtocolError("Missing 'text'")

        binding = self.resolve(channel_id)
        if binding is None:
            raise ProtocolError(f"No binding for channel {channel_id}", http_status=422)

        event = CanonicalEvent(
            kind=EventKind.SCHEDULED,
            channel_id=channel_id,
            timestamp=str(int(time.time() * 1000)),
            user_id=str(payload.get("source") or "system"),
            text=text,
        )
        if not self._coordinator.enqueue_event(event, binding):
            raise CapacityError(
                f"Event queue full for {channel_id}",
                capacity=self._coordinator.capacity,
                channel_id=channel_id,
            )
        return JSONResponse({"status": "queued", "channelId": channel_id}, status_code=202)
