"""Web binding: browser chat over Server-Sent Events.

``POST /web/chat`` with ``{"message": ..., "channelId": ...}`` starts a run
and answers with an SSE stream. Message primitives become stream events:
``message``, ``edit``, ``delete``, ``detail``, ``upload``, then ``done``
(preceded by ``error`` when the run failed).
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse

from relay.channels.base import BaseBinding
from relay.channels.commands import parse_message
from relay.channels.protocol import (
    CanonicalEvent,
    ChannelCapabilities,
    EventKind,
    Platform,
    RunOutcome,
)
from relay.channels.transcript import Transcript
from relay.config import WEB_CHAT_PATH
from relay.core.errors import ProtocolError
from relay.core.logging import get_logger

_log = get_logger("bindings.web")

DEFAULT_CHANNEL = "web"

FORMAT_INSTRUCTIONS = """## Text Formatting (Markdown)
Standard Markdown is rendered: **bold**, _italic_, `code`, fenced blocks, tables."""


class WebBinding(BaseBinding):
    platform = Platform.WEB
    capabilities = ChannelCapabilities(
        max_message_length=100_000,
        threads=True,
        typing_indicator=False,
    )
    format_instructions = FORMAT_INSTRUCTIONS

    def __init__(
        self,
        *,
        route_path: str = WEB_CHAT_PATH,
        transcript: Transcript | None = None,
    ) -> None:
        super().__init__(route_path=route_path, transcript=transcript)
        self._streams: dict[str, asyncio.Queue] = {}

    @property
    def open_streams(self) -> list[str]:
        return list(self._streams)

    # ── Inbound ─────────────────────────────────────────────

    async def handle_request(self, request: Request) -> Response:
        try:
            payload = await request.json()
        except ValueError as e:
            raise ProtocolError("Invalid JSON body") from e
        if not isinstance(payload, dict):
            raise ProtocolError("Body must be a JSON object")
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ProtocolError("Missing 'message'")
        channel_id = str(payload.get("channelId") or DEFAULT_CHANNEL)

        event = CanonicalEvent(
            kind=EventKind.DIRECT_MESSAGE,
            channel_id=channel_id,
            timestamp=str(int(time.time() * 1000)),
            user_id=str(payload.get("userId") or "web-user"),
            text=message.strip(),
            user_name=str(payload.get("userName") or ""),
        )

        if parse_message(event.text).is_control:
            result = await self.receive(event)
            return JSONResponse({"result": result.value})

        if self.coordinator.is_running(channel_id) or channel_id in self._streams:
            return JSONResponse(
                {"error": "Already processing a message for this channel"}, status_code=409
            )

        self._transcript.log_user(event)
        stream: asyncio.Queue = asyncio.Queue()
        self._streams[channel_id] = stream
        done = self.coordinator.enqueue_run(event, self)
        done.add_done_callback(lambda fut: self._finish(stream, fut))
        _log.info("WEB run queued", channel=channel_id)
        return EventSourceResponse(self._events(channel_id, stream))

    async def _events(self, channel_id: str, stream: asyncio.Queue) -> AsyncIterator[dict[str, str]]:
        try:
            while True:
                item = await stream.get()
                if item is None:
                    yield {"event": "done", "data": json.dumps({"channelId": channel_id})}
                    break
                yield {"event": item["type"], "data": json.dumps(item, ensure_ascii=False)}
        finally:
            if self._streams.get(channel_id) is stream:
                del self._streams[channel_id]

    def _finish(self, stream: asyncio.Queue, done: asyncio.Future) -> None:
        outcome = None if done.cancelled() else done.result()
        if outcome not in (RunOutcome.COMPLETED, RunOutcome.ABORTED):
            stream.put_nowait({"type": "error", "message": "Run failed"})
        stream.put_nowait(None)

    def _emit(self, channel_id: str, payload: dict[str, Any]) -> None:
        stream = self._streams.get(channel_id)
        if stream is None:
            _log.debug("WEB no open stream", channel=channel_id, type=payload.get("type"))
            return
        stream.put_nowait(payload)

    # ── Message primitives ──────────────────────────────────

    async def post(self, channel_id: str, text: str) -> str:
        handle = uuid4().hex[:12]
        self._emit(channel_id, {"type": "message", "id": handle, "text": text})
        return handle

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        self._emit(channel_id, {"type": "edit", "id": handle, "text": text})

    async def delete(self, channel_id: str, handle: str) -> None:
        self._emit(channel_id, {"type": "delete", "id": handle})

    async def post_detail(self, channel_id: str, parent: str | None, text: str) -> str | None:
        handle = uuid4().hex[:12]
        self._emit(channel_id, {"type": "detail", "id": handle, "parent": parent, "text": text})
        return handle

    async def upload(self, channel_id: str, path: str, title: str | None = None) -> str:
        handle = uuid4().hex[:12]
        self._emit(channel_id, {"type": "upload", "id": handle, "path": path, "title": title})
        return handle
