"""Per-conversation JSONL transcript.

One line per inbound user message and per delivered bot answer, written to
``<working_dir>/<channel_id>/log.jsonl``.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from relay.channels.protocol import CanonicalEvent
from relay.config import WORKING_DIR
from relay.core.logging import get_logger

_log = get_logger("channels.transcript")

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.@-]")


class Transcript:
    def __init__(self, root: Path = WORKING_DIR) -> None:
        self.root = Path(root)

    def path_for(self, channel_id: str) -> Path:
        safe = _UNSAFE_RE.sub("_", channel_id) or "_"
        return self.root / safe / "log.jsonl"

    def log_user(self, event: CanonicalEvent) -> None:
        self.append(
            event.channel_id,
            {
                "ts": event.timestamp,
                "user": event.user_id,
                "userName": event.user_name,
                "kind": event.kind.value,
                "text": event.text,
                "attachments": [a.name for a in event.attachments],
                "isBot": False,
            },
        )

    def log_bot(self, channel_id: str, text: str, handle: str) -> None:
        self.append(
            channel_id,
            {
                "ts": handle,
                "user": "bot",
                "text": text,
                "isBot": True,
            },
        )

    def append(self, channel_id: str, entry: dict[str, Any]) -> None:
        """Append one entry; write failures are logged and dropped."""
        record = {"date": datetime.now(timezone.utc).isoformat(), **entry}
        path = self.path_for(channel_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            _log.warning("TRANSCRIPT write failed", channel=channel_id, error=str(e))

    def read(self, channel_id: str) -> list[dict[str, Any]]:
        path = self.path_for(channel_id)
        if not path.exists():
            return []
        entries = []
        with path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries
