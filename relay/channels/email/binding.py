"""Email binding: JSON inbound webhook, one reply email per run.

The mail provider posts each inbound message to the webhook as JSON
(``from``, ``subject``, ``body``, ``messageId``, threading headers and
base64 attachments). Email has no live message to edit, so during a run
the message primitives only accumulate drafts. When the run ends the
binding sends a single threaded reply with the final answer and a short
work log built from the tool labels it saw.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask

from relay.channels.base import BaseBinding
from relay.channels.protocol import (
    Attachment,
    CanonicalEvent,
    ChannelCapabilities,
    EventKind,
    Platform,
    RunOutcome,
)
from relay.channels.renderer import SPINNER, STOPPED_NOTICE, STOPPING_NOTICE
from relay.channels.transcript import Transcript
from relay.config import EMAIL_WEBHOOK_PATH
from relay.core.errors import ProtocolError, TransportError
from relay.core.http_pool import get_client
from relay.core.logging import get_logger

_log = get_logger("bindings.email")

NO_SUBJECT = "(no subject)"
TOOL_PREFIX = "→ "

FORMAT_INSTRUCTIONS = """## Email Formatting (Markdown)
You are responding via email. Use standard Markdown formatting.
Bold: **text**, Italic: *text*, Code: `code`, Block: ```code```, Links: [text](url)
Keep responses concise and professional. The user will receive one email with your complete response."""

# "*✓ bash*: Running git status (1.2s)"
_TOOL_RESULT_RE = re.compile(r"^\*([✓✗]) (\w+)\*(?:: (.+?))? \((\d+\.\d+)s\)")
_CHANNEL_UNSAFE_RE = re.compile(r"[^a-z0-9]")


def channel_id_for(address: str) -> str:
    """Stable conversation id for a sender address."""
    return "email-" + _CHANNEL_UNSAFE_RE.sub("_", address.lower())


def reply_subject(subject: str) -> str:
    return subject if subject.startswith("Re:") else f"Re: {subject}"


def build_message_text(subject: str, body: str, saved: dict[str, str]) -> str:
    parts = []
    if subject:
        parts.append(f"Subject: {subject}")
    parts.append(body)
    if saved:
        listing = "\n".join(f"- {name}: {path}" for name, path in saved.items())
        parts.append(f"Attachments saved to disk:\n{listing}")
    return "\n\n".join(parts)


@dataclass(frozen=True)
class EmailThread:
    """Who to answer and how to thread the answer."""

    address: str
    subject: str = NO_SUBJECT
    message_id: str | None = None
    references: str | None = None

    def reply_headers(self) -> dict[str, str]:
        if not self.message_id:
            return {}
        chain = f"{self.references} {self.message_id}" if self.references else self.message_id
        return {"in_reply_to": self.message_id, "references": chain}


@dataclass
class _Draft:
    """What one run rendered, collected until the run ends."""

    messages: dict[str, str] = field(default_factory=dict)
    work_log: list[str] = field(default_factory=list)
    tool_calls: int = 0
    response: str | None = None

    def note_status(self, text: str) -> None:
        for line in text.removesuffix(SPINNER).splitlines():
            if line.startswith(TOOL_PREFIX) and line not in self.work_log:
                self.work_log.append(line)
                self.tool_calls += 1

    def note_detail(self, text: str) -> None:
        match = _TOOL_RESULT_RE.match(text)
        if match is None:
            return
        status, tool, label, duration = match.groups()
        mark = "→" if status == "✓" else "✗"
        self.work_log.append(f"{mark} {label or tool} ({duration}s)")

    def final_text(self) -> str:
        if self.response is not None:
            return self.response
        parts = []
        for text in self.messages.values():
            if text in (STOPPING_NOTICE, STOPPED_NOTICE):
                continue
            kept = [
                line
                for line in text.removesuffix(SPINNER).splitlines()
                if not line.startswith(TOOL_PREFIX)
            ]
            body = "\n".join(kept).strip()
            if body:
                parts.append(body)
        return "\n\n".join(parts)

    def work_log_text(self) -> str:
        if not self.work_log:
            return ""
        lines = "\n".join(self.work_log)
        return f"Work log:\n{lines}\n{self.tool_calls} tool calls"


class EmailBinding(BaseBinding):
    """Email channel binding over an inbound webhook and a send API."""

    platform = Platform.EMAIL
    capabilities = ChannelCapabilities(
        max_message_length=100_000,
        threads=True,
        typing_indicator=False,
        uploads=False,
    )
    format_instructions = FORMAT_INSTRUCTIONS

    def __init__(
        self,
        send_url: str,
        send_token: str,
        *,
        webhook_token: str,
        route_path: str = EMAIL_WEBHOOK_PATH,
        client: httpx.AsyncClient | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        super().__init__(route_path=route_path, transcript=transcript)
        if not webhook_token:
            raise ValueError("Email webhook token is required")
        self._send_url = send_url
        self._send_token = send_token
        self._webhook_token = webhook_token
        self._client = client
        self._threads: dict[tuple[str, str], EmailThread] = {}
        self._latest: dict[str, EmailThread] = {}
        self._drafts: dict[str, _Draft] = {}

    # ── Send API ────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = await get_client(
                "email",
                headers={"Authorization": f"Bearer {self._send_token}"},
            )
        return self._client

    async def send(self, thread: EmailThread, body: str, work_log: str = "") -> str:
        """Send one reply on ``thread`` and return the provider's message id."""
        payload: dict[str, Any] = {
            "to": thread.address,
            "subject": reply_subject(thread.subject),
            "body": body,
        }
        if work_log:
            payload["log"] = "inline"
            payload["log_content"] = work_log
        payload.update(thread.reply_headers())

        client = await self._get_client()
        try:
            resp = await client.post(self._send_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"send failed: {e}", platform="email") from e
        message_id = data.get("messageId") if isinstance(data, dict) else None
        _log.info("EMAIL reply sent", to=thread.address, subject=payload["subject"], message_id=message_id)
        return str(message_id or uuid4().hex[:12])

    # ── Inbound ─────────────────────────────────────────────

    def verify(self, authorization: str) -> None:
        """Raise ProtocolError unless the request carries the webhook token."""
        if not hmac.compare_digest(authorization.encode(), f"Bearer {self._webhook_token}".encode()):
            raise ProtocolError("Invalid webhook token", http_status=401)

    async def handle_request(self, request: Request) -> Response:
        self.verify(request.headers.get("Authorization", ""))
        try:
            payload = await request.json()
        except ValueError as e:
            raise ProtocolError("Invalid JSON body") from e
        if not isinstance(payload, dict):
            raise ProtocolError("Body must be a JSON object")
        if not payload.get("from") or not payload.get("body"):
            raise ProtocolError("Missing required fields: from, body")
        # Acknowledge before the run; replies can take minutes.
        return JSONResponse({"ok": True}, background=BackgroundTask(self.process, payload))

    async def process(self, payload: dict[str, Any]) -> asyncio.Future:
        """Turn one inbound email into a run on the sender's conversation.

        Returns the queued run's future, resolved with its outcome.
        """
        address = str(payload["from"])
        subject = str(payload.get("subject") or "")
        channel_id = channel_id_for(address)
        _log.info("EMAIL inbound", channel=channel_id, subject=subject or NO_SUBJECT)

        saved = self._save_attachments(channel_id, payload.get("attachments") or [])
        event = CanonicalEvent(
            kind=EventKind.DIRECT_MESSAGE,
            channel_id=channel_id,
            timestamp=f"{time.time():.6f}",
            user_id=address,
            text=build_message_text(subject, str(payload["body"]), saved),
            attachments=tuple(Attachment(name, path) for name, path in saved.items()),
            user_name=address.split("@")[0],
        )
        thread = EmailThread(
            address=address,
            subject=subject or NO_SUBJECT,
            message_id=payload.get("messageId") or None,
            references=payload.get("references") or None,
        )
        self._threads[(channel_id, event.timestamp)] = thread
        self._latest[channel_id] = thread
        self._transcript.log_user(event)

        if self.coordinator.is_running(channel_id):
            _log.info("EMAIL run active, queued behind it", channel=channel_id)
        # Mail is never answered with a busy notice or dropped.
        return self.coordinator.enqueue_run(event, self)

    def _save_attachments(self, channel_id: str, attachments: list[Any]) -> dict[str, str]:
        saved: dict[str, str] = {}
        if not attachments:
            return saved
        directory = self._transcript.path_for(channel_id).parent / "attachments"
        for att in attachments:
            if not isinstance(att, dict):
                continue
            name = Path(str(att.get("filename") or "attachment")).name
            try:
                content = base64.b64decode(str(att.get("content") or ""))
                directory.mkdir(parents=True, exist_ok=True)
                path = directory / name
                path.write_bytes(content)
            except (binascii.Error, ValueError, OSError) as e:
                _log.warning("EMAIL attachment not saved", channel=channel_id, filename=name, error=str(e))
                continue
            saved[name] = str(path)
            _log.info("EMAIL attachment saved", channel=channel_id, filename=name, size=len(content))
        return saved

    # ── Message primitives ──────────────────────────────────

    def _draft(self, channel_id: str) -> _Draft | None:
        draft = self._drafts.get(channel_id)
        if draft is None and self._coordinator is not None and self._coordinator.is_running(channel_id):
            draft = self._drafts[channel_id] = _Draft()
        return draft

    async def post(self, channel_id: str, text: str) -> str:
        draft = self._draft(channel_id)
        if draft is None:
            # Outside a run, e.g. a cross-conversation send: mail it directly.
            thread = self._latest.get(channel_id)
            if thread is None:
                raise TransportError(f"No known address for {channel_id}", platform="email")
            return await self.send(thread, text)
        handle = uuid4().hex[:12]
        draft.messages[handle] = text
        draft.note_status(text)
        return handle

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        draft = self._draft(channel_id)
        if draft is None or handle not in draft.messages:
            raise TransportError("message to edit not found", platform="email")
        draft.messages[handle] = text
        draft.note_status(text)

    async def delete(self, channel_id: str, handle: str) -> None:
        draft = self._draft(channel_id)
        if draft is not None:
            draft.messages.pop(handle, None)

    async def post_detail(self, channel_id: str, parent: str | None, text: str) -> str | None:
        draft = self._draft(channel_id)
        if draft is None:
            return None
        draft.note_detail(text)
        return None

    def log_bot_response(self, channel_id: str, text: str, handle: str) -> None:
        draft = self._drafts.get(channel_id)
        if draft is not None:
            draft.response = text
        super().log_bot_response(channel_id, text, handle)

    async def end_run(self, event: CanonicalEvent, outcome: RunOutcome) -> None:
        channel_id = event.channel_id
        draft = self._drafts.pop(channel_id, None)
        thread = self._threads.pop((channel_id, event.timestamp), None) or self._latest.get(channel_id)
        if draft is None:
            return
        text = draft.final_text()
        if not text.strip():
            _log.info("EMAIL no reply text", channel=channel_id, outcome=outcome.value)
            return
        if thread is None:
            _log.warning("EMAIL no address to reply to", channel=channel_id)
            return
        await self.send(thread, text, draft.work_log_text())
