"""Per-run rendering state machine.

Turns the ordered RenderInstruction stream of one run into a small number
of platform messages: a status message that accumulates progress, an
optional streaming message for interim text, a final answer message and
optional thread details. Platform calls run strictly one at a time through
a private pipeline, in the order instructions arrived. Edits are throttled
per message kind; coalesced flushes always render the latest state.

Platform failures never escape: each is logged and rendering continues.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from relay.channels.instructions import (
    ContentAppend,
    Delete,
    RenderInstruction,
    Replace,
    StatusUpdate,
    ThreadDetail,
    Typing,
    Upload,
)
from relay.channels.message_chunker import chunk_message
from relay.channels.protocol import Binding
from relay.channels.queue import ChannelQueue
from relay.channels.throttle import DeadlineThrottle
from relay.config import (
    EDIT_THROTTLE_SECONDS,
    STATUS_MAX_CHARS,
    STATUS_WINDOW,
    STREAM_MAX_CHARS,
    STREAM_MIN_CHARS,
    STREAM_THROTTLE_SECONDS,
    STREAMING_ENABLED,
)
from relay.core.logging import get_logger

_log = get_logger("channels.renderer")

DEFAULT_HEADER = "Thinking"
SPINNER = " ..."
TRIMMED_PREFIX = "... trimmed"
STOPPING_NOTICE = "_Stopping..._"
STOPPED_NOTICE = "_Stopped_"


class RenderPhase(str, Enum):
    AWAITING_FIRST_CONTENT = "awaiting_first_content"
    ACCUMULATING_STATUS = "accumulating_status"
    STREAMING_FINAL = "streaming_final"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class StatusPolicy:
    """How accumulated status entries are shown.

    ``window`` > 0 keeps only the last N entries. Otherwise every entry is
    kept and the oldest are trimmed, behind a marker, once the rendered
    message would exceed ``max_chars``.
    """

    window: int = STATUS_WINDOW
    max_chars: int = STATUS_MAX_CHARS

    def compose(
        self, header: str, entries: list[str], *, suffix: str = "", limit: int | None = None
    ) -> str:
        """Render header and entries, then ``suffix``, within the char budget.

        ``limit`` caps the budget further, for platforms whose message limit
        is below ``max_chars``.
        """
        budget = min(self.max_chars, limit or self.max_chars) - len(suffix)
        shown = entries[-self.window:] if self.window > 0 else list(entries)
        lead = [header] if header else []
        display = "\n".join(lead + shown)
        if len(display) > budget:
            while len(shown) > 1:
                shown.pop(0)
                display = "\n".join([TRIMMED_PREFIX] + lead + shown)
                if len(display) <= budget:
                    break
            display = display[: max(budget, 0)]
        return display + suffix


@dataclass(frozen=True)
class RenderSettings:
    edit_interval: float = EDIT_THROTTLE_SECONDS
    stream_interval: float = STREAM_THROTTLE_SECONDS
    stream_min_chars: int = STREAM_MIN_CHARS
    stream_max_chars: int = STREAM_MAX_CHARS
    streaming: bool = STREAMING_ENABLED
    status: StatusPolicy = field(default_factory=StatusPolicy)


@dataclass
class _Entry:
    text: str
    durable: bool


class RenderStateMachine:
    """Renders one run's instructions onto a binding."""

    def __init__(
        self,
        binding: Binding,
        channel_id: str,
        *,
        header: str = DEFAULT_HEADER,
        settings: RenderSettings | None = None,
    ) -> None:
        self._binding = binding
        self._channel_id = channel_id
        self._header = header
        self._settings = settings or RenderSettings()
        self._max_length = binding.capabilities.max_message_length
        self._stream_limit = min(self._settings.stream_max_chars, self._max_length)

        self._pipeline = ChannelQueue(f"{channel_id}:render")
        self._details = ChannelQueue(f"{channel_id}:detail")
        self._status_throttle = DeadlineThrottle(
            self._settings.edit_interval, self._on_status_deadline
        )
        self._stream_throttle = DeadlineThrottle(
            self._settings.stream_interval, self._on_stream_deadline
        )

        self._entries: list[_Entry] = []
        self._pending: str | None = None
        self._status_handle: str | None = None
        self._status_dirty = False
        self._stream_handle: str | None = None
        self._streamed_text = ""
        self._stream_paused = False
        self._stream_failed = False
        self._final_handle: str | None = None
        self._extra_handles: list[str] = []
        self._detail_handles: list[str] = []
        self._stop_marker: str | None = None
        self._working = True
        self._finalized = False
        self._deleted = False

        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            StatusUpdate: self._on_status,
            ContentAppend: self._on_append,
            Replace: self._on_replace,
            ThreadDetail: self._on_detail,
            Typing: self._on_typing,
            Upload: self._on_upload,
            Delete: self._on_delete,
        }

    # ── Public API ──────────────────────────────────────────

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def phase(self) -> RenderPhase:
        if self._finalized:
            return RenderPhase.FINALIZED
        if self._stream_handle is not None or self._final_handle is not None:
            return RenderPhase.STREAMING_FINAL
        if self._status_handle is not None or self._entries:
            return RenderPhase.ACCUMULATING_STATUS
        return RenderPhase.AWAITING_FIRST_CONTENT

    @property
    def final_handle(self) -> str | None:
        return self._final_handle

    @property
    def stop_marker(self) -> str | None:
        return self._stop_marker

    @property
    def handles(self) -> list[str]:
        """Every live message this instance created, stop marker included."""
        found = [
            self._status_handle,
            self._stream_handle,
            self._final_handle,
            *self._extra_handles,
            *self._detail_handles,
            self._stop_marker,
        ]
        return [h for h in found if h is not None]

    async def apply(self, instruction: RenderInstruction) -> None:
        """Apply one instruction; returns once its platform work has run."""
        handler = self._handlers.get(type(instruction))
        if handler is None:
            raise TypeError(f"Unknown render instruction: {type(instruction).__name__}")

        async def _op() -> None:
            if self._finalized and not isinstance(instruction, Delete):
                _log.debug(
                    "RENDER ignored after finalize",
                    channel=self._channel_id,
                    instruction=type(instruction).__name__,
                )
                return
            await handler(instruction)

        await self._pipeline.enqueue(_op)

    __call__ = apply

    async def finalize(self) -> None:
        """End the run's rendering. Calling it again has no effect."""
        await self._pipeline.enqueue(self._finalize)

    async def show_stopping(self) -> str | None:
        """Post the transient stop indicator once and return its handle."""
        return await self._pipeline.enqueue(self._show_stopping)

    async def show_stopped(self) -> None:
        """Turn the stop indicator into its terminal text."""
        await self._pipeline.enqueue(self._show_stopped)

    async def flush(self) -> None:
        """Wait for queued platform work, thread details included."""
        await self._pipeline.join()
        await self._details.join()

    def close(self) -> None:
        self._status_throttle.cancel()
        self._stream_throttle.cancel()
        self._pipeline.close()
        self._details.close()

    # ── Instruction handlers ────────────────────────────────

    async def _on_status(self, instruction: StatusUpdate) -> None:
        await self._commit_pending()
        self._drop_default_header()
        self._entries.append(_Entry(f"→ {instruction.label}", durable=False))
        await self._request_status_flush()

    async def _on_append(self, instruction: ContentAppend) -> None:
        if not instruction.text:
            return
        self._pending = (self._pending or "") + instruction.text
        if self._settings.streaming:
            await self._advance_stream()

    async def _on_replace(self, instruction: Replace) -> None:
        text = instruction.text
        if not text.strip():
            return
        self._pending = None
        self._stream_throttle.cancel()

        chunks = chunk_message(text, self._max_length)
        stream_handle = self._stream_handle
        target = self._final_handle or stream_handle
        handle: str | None = None
        if target is not None:
            try:
                await self._binding.edit(self._channel_id, target, chunks[0])
                handle = target
            except Exception as e:
                _log.warning("RENDER final edit failed", channel=self._channel_id, error=str(e))
                await self._safe_delete(target)
                if target == self._final_handle:
                    self._final_handle = None
                if target == self._stream_handle:
                    self._stream_handle = None
                    self._streamed_text = ""

        for stale in self._extra_handles:
            await self._safe_delete(stale)
        self._extra_handles = []
        posted: list[str] = []
        for chunk in chunks[1:] if handle is not None else chunks:
            try:
                posted.append(await self._binding.post(self._channel_id, chunk))
            except Exception as e:
                _log.warning("RENDER chunk post failed", channel=self._channel_id, error=str(e))
        if handle is None:
            if not posted:
                _log.error("RENDER final post failed", channel=self._channel_id, chunks=len(chunks))
                return
            handle = posted.pop(0)

        if stream_handle is not None:
            if stream_handle not in (handle, target):
                await self._safe_delete(stream_handle)
            self._stream_handle = None
            self._streamed_text = ""
        self._stream_paused = False
        self._final_handle = handle
        self._extra_handles = posted

        self._binding.log_bot_response(self._channel_id, text, handle)

    async def _on_detail(self, instruction: ThreadDetail) -> None:
        if not self._binding.capabilities.threads:
            return
        await self._commit_pending()
        parent = self._final_handle or self._status_handle
        text = instruction.text

        async def _post() -> None:
            try:
                handle = await self._binding.post_detail(self._channel_id, parent, text)
            except Exception as e:
                _log.warning("RENDER detail failed", channel=self._channel_id, error=str(e))
                return
            if handle is not None:
                self._detail_handles.append(handle)

        self._details.enqueue(_post)

    async def _on_typing(self, instruction: Typing) -> None:
        await self._commit_pending()
        if not instruction.active:
            return
        if self._status_handle or self._stream_handle or self._final_handle:
            return
        if self._binding.capabilities.typing_indicator:
            try:
                await self._binding.send_typing(self._channel_id)
            except Exception as e:
                _log.debug("RENDER typing failed", channel=self._channel_id, error=str(e))
        self._status_throttle.cancel()
        await self._flush_status()

    async def _on_upload(self, instruction: Upload) -> None:
        await self._commit_pending()
        try:
            await self._binding.upload(self._channel_id, instruction.path, instruction.title)
        except Exception as e:
            _log.warning(
                "RENDER upload failed", channel=self._channel_id, path=instruction.path, error=str(e)
            )

    async def _on_delete(self, instruction: Delete) -> None:
        self._status_throttle.cancel()
        self._stream_throttle.cancel()
        self._pending = None
        self._status_dirty = False
        await self._details.join()
        for handle in self.handles:
            await self._safe_delete(handle)
        self._status_handle = None
        self._stream_handle = None
        self._final_handle = None
        self._extra_handles = []
        self._detail_handles = []
        self._stop_marker = None
        self._entries.clear()
        self._deleted = True

    # ── Streaming ───────────────────────────────────────────

    async def _advance_stream(self) -> None:
        if self._stream_failed or self._stream_paused:
            return
        text = self._pending or ""
        if len(text) > self._stream_limit:
            self._stream_paused = True
            self._stream_throttle.cancel()
            _log.debug("RENDER stream over limit", channel=self._channel_id, chars=len(text))
            return
        if len(text) < self._settings.stream_min_chars:
            return
        if self._stream_handle is None and self._status_handle is not None and not self._entries:
            # Only the header is showing; the stream replaces it.
            await self._safe_delete(self._status_handle)
            self._status_handle = None
            self._status_dirty = False
            self._status_throttle.cancel()
        if self._stream_throttle.request():
            await self._flush_stream()

    async def _flush_stream(self) -> None:
        text = self._pending
        if not text or not text.strip() or self._stream_failed or self._stream_paused:
            return
        if text == self._streamed_text:
            return
        try:
            if self._stream_handle is None:
                self._stream_handle = await self._binding.post(self._channel_id, text)
            else:
                await self._binding.edit(self._channel_id, self._stream_handle, text)
            self._streamed_text = text
        except Exception as e:
            _log.warning("RENDER stream disabled", channel=self._channel_id, error=str(e))
            self._stream_failed = True
        finally:
            self._stream_throttle.mark()

    def _on_stream_deadline(self) -> None:
        async def _deferred() -> None:
            if self._finalized or self._deleted or self._pending is None:
                return
            if self._stream_throttle.request():
                await self._flush_stream()

        self._pipeline.enqueue(_deferred)

    # ── Status message ──────────────────────────────────────

    def _drop_default_header(self) -> None:
        if self._header == DEFAULT_HEADER:
            self._header = ""

    def _compose_status(self) -> str:
        return self._settings.status.compose(
            self._header,
            [e.text for e in self._entries],
            suffix=SPINNER if self._working else "",
            limit=self._max_length,
        )

    async def _request_status_flush(self) -> None:
        self._status_dirty = True
        if self._status_throttle.request():
            await self._flush_status()

    async def _flush_status(self) -> None:
        display = self._compose_status()
        if not display.strip():
            return
        try:
            if self._status_handle is None:
                self._status_handle = await self._binding.post(self._channel_id, display)
            else:
                await self._binding.edit(self._channel_id, self._status_handle, display)
        except Exception as e:
            _log.warning("RENDER status flush failed", channel=self._channel_id, error=str(e))
        finally:
            self._status_dirty = False
            self._status_throttle.mark()

    def _on_status_deadline(self) -> None:
        async def _deferred() -> None:
            if self._finalized or self._deleted or not self._status_dirty:
                return
            if self._status_throttle.request():
                await self._flush_status()

        self._pipeline.enqueue(_deferred)

    async def _commit_pending(self) -> None:
        """Move interim text into the status message as a durable entry."""
        if self._pending is None:
            return
        text, self._pending = self._pending, None
        self._stream_throttle.cancel()
        self._stream_paused = False
        if self._stream_handle is not None:
            await self._safe_delete(self._stream_handle)
            self._stream_handle = None
        self._streamed_text = ""
        if text.strip():
            self._drop_default_header()
            self._entries.append(_Entry(text, durable=True))
            await self._request_status_flush()

    # ── Finalize / stop indicator ───────────────────────────

    async def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._working = False
        self._status_throttle.cancel()
        self._stream_throttle.cancel()
        await self._details.join()
        if self._deleted:
            return

        if self._pending is not None:
            text = self._pending
            if (
                self._stream_handle is not None
                and not self._stream_failed
                and len(text) <= self._stream_limit
            ):
                self._pending = None
                try:
                    if text != self._streamed_text:
                        await self._binding.edit(self._channel_id, self._stream_handle, text)
                    self._final_handle, self._stream_handle = self._stream_handle, None
                    self._binding.log_bot_response(self._channel_id, text, self._final_handle)
                except Exception as e:
                    _log.warning("RENDER stream final edit failed", channel=self._channel_id, error=str(e))
                    self._pending = text
            if self._pending is not None:
                await self._commit_pending()

        if any(entry.durable for entry in self._entries):
            self._status_throttle.cancel()
            wait = self._status_throttle.remaining()
            if wait > 0:
                await asyncio.sleep(wait)
            await self._flush_status()
        elif self._status_handle is not None:
            await self._safe_delete(self._status_handle)
            self._status_handle = None
        _log.debug("RENDER finalized", channel=self._channel_id, messages=len(self.handles))

    async def _show_stopping(self) -> str | None:
        if self._stop_marker is not None or self._finalized:
            return self._stop_marker
        try:
            self._stop_marker = await self._binding.post(self._channel_id, STOPPING_NOTICE)
        except Exception as e:
            _log.warning("RENDER stop notice failed", channel=self._channel_id, error=str(e))
        return self._stop_marker

    async def _show_stopped(self) -> None:
        try:
            if self._stop_marker is not None:
                await self._binding.edit(self._channel_id, self._stop_marker, STOPPED_NOTICE)
            else:
                self._stop_marker = await self._binding.post(self._channel_id, STOPPED_NOTICE)
        except Exception as e:
            _log.warning("RENDER stopped notice failed", channel=self._channel_id, error=str(e))

    async def _safe_delete(self, handle: str) -> None:
        try:
            await self._binding.delete(self._channel_id, handle)
        except Exception as e:
            _log.debug("RENDER delete ignored", channel=self._channel_id, handle=handle, error=str(e))
