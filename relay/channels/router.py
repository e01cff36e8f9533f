"""Cross-channel router. Resolves a channel id to the binding that owns it.

Used by the outbound "send to any conversation" capability. Resolution
walks an ordered rule list; the first matching rule wins. Failures come
back as a SendResult, never as an exception.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from relay.channels.protocol import Binding, OutboundMessage, Platform
from relay.core.logging import get_logger

_log = get_logger("channels.router")


@dataclass(frozen=True)
class RouteRule:
    pattern: re.Pattern[str]
    platform: Platform
    description: str

    def matches(self, channel_id: str) -> bool:
        return self.pattern.search(channel_id) is not None


DEFAULT_RULES: tuple[RouteRule, ...] = (
    RouteRule(re.compile(r"^-?\d+$"), Platform.TELEGRAM, "numeric ids → telegram"),
    RouteRule(re.compile(r"^[CDG]"), Platform.SLACK, "C/D/G prefix → slack"),
    RouteRule(re.compile(r"^email-"), Platform.EMAIL, "email- prefix → email"),
)


@dataclass
class SendResult:
    """Structured outcome of an outbound send."""

    ok: bool
    channel_id: str
    platform: Platform | None = None
    handle: str | None = None
    error: str | None = None
    uploaded: int = 0

    def to_text(self) -> str:
        if not self.ok:
            return f"Failed to send to {self.channel_id}: {self.error}"
        platform = self.platform.value if self.platform else "unknown"
        text = f"Message sent to {self.channel_id} via {platform} (message {self.handle})"
        if self.uploaded:
            text += f" with {self.uploaded} attachment(s)"
        return text


class CrossChannelRouter:
    def __init__(
        self,
        bindings: Iterable[Binding] = (),
        *,
        rules: Sequence[RouteRule] = DEFAULT_RULES,
    ) -> None:
        self._rules = tuple(rules)
        self._bindings: dict[Platform, Binding] = {}
        for binding in bindings:
            self.register(binding)

    @property
    def rules(self) -> tuple[RouteRule, ...]:
        return self._rules

    def register(self, binding: Binding) -> None:
        self._bindings[binding.platform] = binding

    def resolve(self, channel_id: str) -> Binding | None:
        for rule in self._rules:
            if rule.matches(channel_id):
                return self._bindings.get(rule.platform)
        return None

    async def send(self, message: OutboundMessage) -> SendResult:
        """Post ``message`` to whichever binding owns its channel."""
        channel_id = message.channel_id
        binding = self.resolve(channel_id)
        if binding is None:
            patterns = "; ".join(r.description for r in self._rules)
            _log.warning("ROUTE unresolved", channel=channel_id)
            return SendResult(
                ok=False,
                channel_id=channel_id,
                error=f"no binding for this channel id (known patterns: {patterns})",
            )

        platform = binding.platform
        try:
            handle = await binding.post(channel_id, message.text)
            for path in message.attachments:
                await binding.upload(channel_id, path)
        except Exception as e:
            _log.warning("ROUTE send failed", channel=channel_id, platform=platform.value, error=str(e))
            return SendResult(ok=False, channel_id=channel_id, platform=platform, error=str(e))

        binding.log_bot_response(channel_id, message.text, handle)
        _log.info("ROUTE sent", channel=channel_id, platform=platform.value)
        return SendResult(
            ok=True,
            channel_id=channel_id,
            platform=platform,
            handle=handle,
            uploaded=len(message.attachments),
        )
