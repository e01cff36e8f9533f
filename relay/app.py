"""Composition root.

Wires the Gateway, CrossChannelRouter, RunCoordinator, bindings and the
heartbeat scheduler together around an externally supplied AgentEngine.
Startup order: bind the gateway (fatal on failure), then start bindings
concurrently, marking each route ready as its binding comes up.
"""

from __future__ import annotations

from typing import Sequence

from relay.channels.base import BaseBinding
from relay.channels.coordinator import RunCoordinator
from relay.channels.events import EventsEndpoint
from relay.channels.gateway import Gateway
from relay.channels.manager import ChannelManager
from relay.channels.protocol import AgentEngine, OutboundMessage
from relay.channels.renderer import RenderSettings
from relay.channels.router import CrossChannelRouter, SendResult
from relay.channels.scheduler import HeartbeatBinding, HeartbeatScheduler
from relay.config import (
    EMAIL_SEND_TOKEN,
    EMAIL_SEND_URL,
    EMAIL_WEBHOOK_TOKEN,
    EVENTS_PATH,
    HEARTBEAT_CHANNEL,
    HEARTBEAT_INTERVAL_SECONDS,
    HOST,
    PORT,
    SKIP_WEBHOOK_REGISTRATION,
    SLACK_BOT_TOKEN,
    SLACK_SIGNING_SECRET,
    TELEGRAM_ALLOWED_CHAT_IDS,
    TELEGRAM_BOT_TOKEN,
    TELEGRAM_WEBHOOK_SECRET,
    TELEGRAM_WEBHOOK_URL,
    WEB_CHAT_ENABLED,
    ensure_working_dir,
)
from relay.core import http_pool
from relay.core.logging import get_logger

_log = get_logger("app")


def bindings_from_env() -> list[BaseBinding]:
    """Build the bindings whose credentials are configured."""
    bindings: list[BaseBinding] = []
    if TELEGRAM_BOT_TOKEN and TELEGRAM_WEBHOOK_SECRET:
        from relay.channels.telegram import TelegramBinding

        bindings.append(
            TelegramBinding(
                TELEGRAM_BOT_TOKEN,
                webhook_secret=TELEGRAM_WEBHOOK_SECRET,
                webhook_url=TELEGRAM_WEBHOOK_URL,
                skip_registration=SKIP_WEBHOOK_REGISTRATION,
                allowed_chat_ids=TELEGRAM_ALLOWED_CHAT_IDS or None,
            )
        )
    elif TELEGRAM_BOT_TOKEN:
        _log.warning("APP telegram token set without TELEGRAM_WEBHOOK_SECRET, skipping")

    if SLACK_BOT_TOKEN and SLACK_SIGNING_SECRET:
        from relay.channels.slack import SlackBinding

        bindings.append(SlackBinding(SLACK_BOT_TOKEN, SLACK_SIGNING_SECRET))

    if WEB_CHAT_ENABLED:
        from relay.channels.web import WebBinding

        bindings.append(WebBinding())

    if EMAIL_SEND_URL and EMAIL_SEND_TOKEN and EMAIL_WEBHOOK_TOKEN:
        from relay.channels.email import EmailBinding

        bindings.append(
            EmailBinding(EMAIL_SEND_URL, EMAIL_SEND_TOKEN, webhook_token=EMAIL_WEBHOOK_TOKEN)
        )
    elif EMAIL_SEND_URL:
        _log.warning("APP email send url set without tokens, skipping")
    return bindings


class Relay:
    def __init__(
        self,
        engine: AgentEngine,
        bindings: Sequence[BaseBinding] = (),
        *,
        host: str = HOST,
        port: int = PORT,
        render_settings: RenderSettings | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.port = port
        self.gateway = Gateway(host=host)
        self.router = CrossChannelRouter()
        self.coordinator = RunCoordinator(engine, render_settings=render_settings)
        self.manager = ChannelManager(self.gateway, self.coordinator, self.router)
        for binding in bindings:
            self.manager.register(binding)

        self.heartbeat_binding = HeartbeatBinding()
        self.manager.register(self.heartbeat_binding)
        self.scheduler = HeartbeatScheduler(
            self.coordinator, self.heartbeat_binding, interval=heartbeat_interval
        )

        self.events = EventsEndpoint(
            self.coordinator,
            self.router,
            extra={HEARTBEAT_CHANNEL: self.heartbeat_binding},
        )
        self.gateway.register(EVENTS_PATH, self.events)

    async def send(self, message: OutboundMessage) -> SendResult:
        """Outbound send to any conversation, for the agent engine's use."""
        return await self.router.send(message)

    async def start(self) -> None:
        ensure_working_dir()
        await self.gateway.start(self.port)
        self.gateway.mark_ready(EVENTS_PATH)
        await self.manager.start_all()
        await self.scheduler.start()
        _log.info(
            "APP started",
            port=self.gateway.port,
            platforms=[p.value for p in self.manager.registered_platforms],
        )

    async def stop(self) -> None:
        _log.info("APP stopping")
        await self.scheduler.stop()
        await self.coordinator.shutdown()
        await self.manager.stop_all()
        await self.gateway.stop()
        closed = await http_pool.close_all()
        _log.info("APP stopped", http_clients=closed)
