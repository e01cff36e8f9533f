"""Slack binding: Events API inbound, Web API message primitives.

Inbound requests are authenticated with Slack's v0 request signature and
a five-minute replay window. Outbound calls go through a pooled httpx
client against the Web API.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from pathlib import Path
from typing import Any

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask

from relay.channels.base import BaseBinding
from relay.channels.commands import strip_mentions
from relay.channels.protocol import (
    CanonicalEvent,
    ChannelCapabilities,
    EventKind,
    HealthStatus,
    Platform,
)
from relay.channels.transcript import Transcript
from relay.config import SLACK_API_URL, SLACK_EVENTS_PATH
from relay.core.errors import ProtocolError, TransportError
from relay.core.http_pool import get_client
from relay.core.logging import get_logger

_log = get_logger("bindings.slack")

REPLAY_WINDOW_SECONDS = 60 * 5

FORMAT_INSTRUCTIONS = """## Text Formatting (Slack mrkdwn)
Bold: *text*, Italic: _text_, Code: `code`, Block: ```code```
Links: <url|text>. Do NOT use **double asterisks** or [markdown](links)."""


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    base = b"v0:" + timestamp.encode() + b":" + body
    digest = hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


class SlackBinding(BaseBinding):
    """Slack channel binding over the Events API."""

    platform = Platform.SLACK
    capabilities = ChannelCapabilities(
        max_message_length=4000,
        threads=True,
        typing_indicator=False,
    )
    format_instructions = FORMAT_INSTRUCTIONS

    def __init__(
        self,
        bot_token: str,
        signing_secret: str,
        *,
        route_path: str = SLACK_EVENTS_PATH,
        api_url: str = SLACK_API_URL,
        bot_user_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        super().__init__(route_path=route_path, transcript=transcript)
        if not signing_secret:
            raise ValueError("Slack signing secret is required")
        self._token = bot_token
        self._signing_secret = signing_secret
        self._api_url = api_url
        self._client = client
        self._bot_user_id = bot_user_id
        self._started_at = 0.0

    # ── Web API ─────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = await get_client(
                "slack",
                base_url=self._api_url,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        return self._client

    async def _call(self, method: str, *, form: bool = False, **payload: Any) -> dict[str, Any]:
        client = await self._get_client()
        try:
            if form:
                resp = await client.post(f"/{method}", data=payload)
            else:
                resp = await client.post(f"/{method}", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"{method} failed: {e}", platform="slack") from e
        if not data.get("ok"):
            raise TransportError(f"{method} failed: {data.get('error', 'unknown')}", platform="slack")
        return data

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        _log.info("SLACK binding starting")
        auth = await self._call("auth.test")
        self._bot_user_id = auth.get("user_id")
        self._started_at = time.time()
        _log.info("SLACK binding connected", team=auth.get("team"), bot=self._bot_user_id)

    async def health_check(self) -> HealthStatus:
        try:
            auth = await self._call("auth.test")
            return HealthStatus(healthy=True, platform=self.platform, details=f"team={auth.get('team')}")
        except Exception as e:
            return HealthStatus(healthy=False, platform=self.platform, details=str(e))

    # ── Inbound ─────────────────────────────────────────────

    def verify(self, timestamp: str, signature: str, body: bytes, *, now: float | None = None) -> None:
        """Raise ProtocolError unless the request carries a fresh, valid signature."""
        if not timestamp or not signature:
            raise ProtocolError("Missing signature headers", http_status=401)
        try:
            ts = int(timestamp)
        except ValueError as e:
            raise ProtocolError("Invalid timestamp", http_status=401) from e
        current = time.time() if now is None else now
        if abs(current - ts) > REPLAY_WINDOW_SECONDS:
            raise ProtocolError("Request too old", http_status=401)
        expected = compute_signature(self._signing_secret, timestamp, body)
        if not hmac.compare_digest(expected, signature):
            raise ProtocolError("Invalid signature", http_status=401)

    async def handle_request(self, request: Request) -> Response:
        body = await request.body()
        self.verify(
            request.headers.get("X-Slack-Request-Timestamp", ""),
            request.headers.get("X-Slack-Signature", ""),
            body,
        )
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ProtocolError("Invalid JSON body") from e

        if payload.get("type") == "url_verification":
            return JSONResponse({"challenge": payload.get("challenge", "")})

        if payload.get("type") != "event_callback":
            return Response(status_code=200)

        event = self.normalize(payload.get("event") or {})
        if event is None:
            return Response(status_code=200)
        # Slack retries after three seconds without a response.
        return Response(status_code=200, background=BackgroundTask(self.receive, event))

    def normalize(self, raw: dict[str, Any]) -> CanonicalEvent | None:
        """Turn a Slack event into a CanonicalEvent, or None to ignore it."""
        if raw.get("bot_id") or not raw.get("user"):
            return None
        if raw.get("user") == self._bot_user_id:
            return None
        if raw.get("subtype") not in (None, "file_share"):
            return None
        ts = raw.get("ts", "")
        try:
            if self._started_at and float(ts) < self._started_at:
                return None
        except ValueError:
            return None

        channel = raw.get("channel", "")
        event_type = raw.get("type")
        if event_type == "app_mention" and not channel.startswith("D"):
            kind = EventKind.MENTION
        elif event_type == "message" and (
            raw.get("channel_type") == "im" or channel.startswith("D")
        ):
            kind = EventKind.DIRECT_MESSAGE
        else:
            return None

        text = strip_mentions(raw.get("text", ""))
        if not text:
            return None
        return CanonicalEvent(
            kind=kind,
            channel_id=channel,
            timestamp=ts,
            user_id=raw["user"],
            text=text,
        )

    # ── Message primitives ──────────────────────────────────

    async def post(self, channel_id: str, text: str) -> str:
        data = await self._call("chat.postMessage", channel=channel_id, text=text)
        return data["ts"]

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        await self._call("chat.update", channel=channel_id, ts=handle, text=text)

    async def delete(self, channel_id: str, handle: str) -> None:
        await self._call("chat.delete", channel=channel_id, ts=handle)

    async def post_detail(self, channel_id: str, parent: str | None, text: str) -> str | None:
        if parent is None:
            return None
        data = await self._call("chat.postMessage", channel=channel_id, thread_ts=parent, text=text)
        return data["ts"]

    async def upload(self, channel_id: str, path: str, title: str | None = None) -> str:
        file_path = Path(path)
        try:
            content = file_path.read_bytes()
        except OSError as e:
            raise TransportError(f"Cannot read {path}: {e}", platform="slack") from e
        name = title or file_path.name
        ticket = await self._call(
            "files.getUploadURLExternal", form=True, filename=file_path.name, length=len(content)
        )
        client = await self._get_client()
        try:
            resp = await client.post(ticket["upload_url"], content=content)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"file upload failed: {e}", platform="slack") from e
        await self._call(
            "files.completeUploadExternal",
            files=[{"id": ticket["file_id"], "title": name}],
            channel_id=channel_id,
        )
        return ticket["file_id"]
