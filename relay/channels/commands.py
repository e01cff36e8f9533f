"""Inline control words and mention stripping for inbound text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class ControlCommand(str, Enum):
    STOP = "stop"


@dataclass
class ParsedCommand:
    """Result of parsing inbound text for control words."""

    content: str
    command: ControlCommand | None = None

    @property
    def is_control(self) -> bool:
        return self.command is not None


# Slack user mentions: <@U0123ABCD> or <@U0123ABCD|name>
_SLACK_MENTION_RE = re.compile(r"<@[A-Za-z0-9]+(?:\|[^>]*)?>")
# Telegram-style @username mentions
_HANDLE_MENTION_RE = re.compile(r"(?<!\w)@\w+")

_CONTROL_WORDS: dict[str, ControlCommand] = {
    "stop": ControlCommand.STOP,
    "/stop": ControlCommand.STOP,
}


def strip_mentions(text: str, bot_username: str | None = None) -> str:
    """Remove platform mentions of the bot from message text.

    Slack mentions are always removed. A bare ``@name`` is removed only when
    it names ``bot_username``, so mentions of other people survive.
    """
    cleaned = _SLACK_MENTION_RE.sub("", text)
    if bot_username:
        target = bot_username.lstrip("@").lower()
        cleaned = _HANDLE_MENTION_RE.sub(
            lambda m: "" if m.group(0)[1:].lower() == target else m.group(0),
            cleaned,
        )
    return cleaned.strip()


def parse_message(text: str, bot_username: str | None = None) -> ParsedCommand:
    """Strip mentions and detect a control word.

    A control word only counts when it is the whole message, so
    "stop the build" is ordinary content.
    """
    content = strip_mentions(text, bot_username)
    command = _CONTROL_WORDS.get(content.lower())
    return ParsedCommand(content=content, command=command)
