"""Telegram binding: webhook inbound, Bot API message primitives.

Uses python-telegram-bot's Bot for outbound calls. Inbound updates arrive
on the gateway route, authenticated with the webhook secret token that
Telegram echoes in ``X-Telegram-Bot-Api-Secret-Token``.
"""

from __future__ import annotations

import hmac
from pathlib import Path

from fastapi import Request
from fastapi.responses import Response
from starlette.background import BackgroundTask
from telegram import Bot, Update
from telegram.constants import ChatAction, ChatType
from telegram.error import BadRequest, TelegramError

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
from relay.config import TELEGRAM_WEBHOOK_PATH
from relay.core.errors import ProtocolError, TransportError
from relay.core.logging import get_logger

_log = get_logger("bindings.telegram")

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

FORMAT_INSTRUCTIONS = """## Text Formatting (Telegram)
Plain text. Keep messages short; long answers are split at 4096 characters.
Do not use Markdown tables or HTML."""


class TelegramBinding(BaseBinding):
    """Telegram channel binding in webhook mode."""

    platform = Platform.TELEGRAM
    capabilities = ChannelCapabilities(
        max_message_length=4096,
        threads=False,
        typing_indicator=True,
    )
    format_instructions = FORMAT_INSTRUCTIONS

    def __init__(
        self,
        token: str,
        *,
        webhook_secret: str,
        webhook_url: str | None = None,
        route_path: str = TELEGRAM_WEBHOOK_PATH,
        skip_registration: bool = False,
        allowed_chat_ids: list[int] | None = None,
        bot: Bot | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        super().__init__(route_path=route_path, transcript=transcript)
        if not webhook_secret:
            raise ValueError("Telegram webhook secret is required")
        self._webhook_secret = webhook_secret
        self._webhook_url = webhook_url
        self._skip_registration = skip_registration or not webhook_url
        self._allowed_chats = set(allowed_chat_ids) if allowed_chat_ids else None
        self._bot = bot or Bot(token)
        self._username: str | None = None

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        _log.info("TELEGRAM binding starting")
        await self._bot.initialize()
        me = await self._bot.get_me()
        self._username = me.username
        if self._skip_registration:
            _log.info("TELEGRAM webhook registration skipped", bot=self._username)
            return
        await self._bot.set_webhook(
            url=self._webhook_url,
            secret_token=self._webhook_secret,
            drop_pending_updates=True,
        )
        _log.info("TELEGRAM webhook registered", bot=self._username, url=self._webhook_url)

    async def stop(self) -> None:
        _log.info("TELEGRAM binding stopping")
        if not self._skip_registration:
            try:
                await self._bot.delete_webhook()
            except TelegramError as e:
                _log.warning("TELEGRAM webhook removal failed", error=str(e))
        await self._bot.shutdown()

    async def health_check(self) -> HealthStatus:
        try:
            me = await self._bot.get_me()
            return HealthStatus(healthy=True, platform=self.platform, details=f"bot=@{me.username}")
        except Exception as e:
            return HealthStatus(healthy=False, platform=self.platform, details=str(e))

    # ── Inbound ─────────────────────────────────────────────

    async def handle_request(self, request: Request) -> Response:
        secret = request.headers.get(SECRET_HEADER, "")
        if not hmac.compare_digest(secret.encode(), self._webhook_secret.encode()):
            raise ProtocolError("Invalid secret token", http_status=401)
        try:
            data = await request.json()
        except ValueError as e:
            raise ProtocolError("Invalid JSON body") from e
        if not isinstance(data, dict):
            raise ProtocolError("Update must be a JSON object")

        event = self.normalize(data)
        if event is None:
            return Response(status_code=200)
        # Telegram retries unacknowledged updates; answer before running.
        return Response(status_code=200, background=BackgroundTask(self.receive, event))

    def normalize(self, data: dict) -> CanonicalEvent | None:
        """Turn a raw Update payload into a CanonicalEvent, or None to ignore it."""
        update = Update.de_json(data, self._bot)
        message = update.effective_message if update else None
        if message is None or not message.text:
            return None
        user = message.from_user
        if user is None or user.is_bot:
            return None
        chat = message.chat
        if self._allowed_chats is not None and chat.id not in self._allowed_chats:
            _log.debug("TELEGRAM chat not allowed", chat=chat.id)
            return None

        text = strip_mentions(message.text, self._username)
        if not text:
            return None
        kind = EventKind.DIRECT_MESSAGE if chat.type == ChatType.PRIVATE else EventKind.MENTION
        timestamp = str(int(message.date.timestamp())) if message.date else str(message.message_id)
        return CanonicalEvent(
            kind=kind,
            channel_id=str(chat.id),
            timestamp=timestamp,
            user_id=str(user.id),
            text=text,
            user_name=user.username or user.first_name or "",
        )

    # ── Message primitives ──────────────────────────────────

    async def post(self, channel_id: str, text: str) -> str:
        try:
            msg = await self._bot.send_message(chat_id=int(channel_id), text=text)
        except TelegramError as e:
            raise TransportError(f"send_message failed: {e}", platform="telegram") from e
        return str(msg.message_id)

    async def edit(self, channel_id: str, handle: str, text: str) -> None:
        try:
            await self._bot.edit_message_text(
                chat_id=int(channel_id), message_id=int(handle), text=text
            )
        except BadRequest as e:
            if "message is not modified" in str(e).lower():
                return
            raise TransportError(f"edit_message_text failed: {e}", platform="telegram") from e
        except TelegramError as e:
            raise TransportError(f"edit_message_text failed: {e}", platform="telegram") from e

    async def delete(self, channel_id: str, handle: str) -> None:
        try:
            await self._bot.delete_message(chat_id=int(channel_id), message_id=int(handle))
        except TelegramError as e:
            raise TransportError(f"delete_message failed: {e}", platform="telegram") from e

    async def upload(self, channel_id: str, path: str, title: str | None = None) -> str:
        file_path = Path(path)
        try:
            with file_path.open("rb") as f:
                msg = await self._bot.send_document(
                    chat_id=int(channel_id),
                    document=f,
                    filename=title or file_path.name,
                )
        except (OSError, TelegramError) as e:
            raise TransportError(f"send_document failed: {e}", platform="telegram") from e
        return str(msg.message_id)

    async def send_typing(self, channel_id: str) -> None:
        try:
            await self._bot.send_chat_action(chat_id=int(channel_id), action=ChatAction.TYPING)
        except TelegramError as e:
            raise TransportError(f"send_chat_action failed: {e}", platform="telegram") from e
