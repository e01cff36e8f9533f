"""Split long replies into platform-safe chunks.

Splits respect, in order of preference:
- fenced code block boundaries
- paragraph and line breaks
- sentence and word boundaries

No chunk ever exceeds the limit. A code block too long for one chunk is
closed at the split and re-opened, with its language tag, in the next one.
"""

from __future__ import annotations

from relay.channels.protocol import ChannelCapabilities

_FENCE = "```"
_FENCE_CLOSE = "\n```"

_SOFT_SEPARATORS = ("\n\n", "\n", ". ", "! ", "? ", " ")


def chunk_message(text: str, max_length: int) -> list[str]:
    """Split text into chunks of at most ``max_length`` characters.

    Args:
        text: Message text to split.
        max_length: Maximum length per chunk.

    Returns:
        List of non-empty chunks; a short text comes back as a single chunk.
    """
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break
        cut = _find_split_point(remaining, max_length)
        head = remaining[:cut].rstrip()
        rest = remaining[cut:].lstrip("\n")
        opener = _open_fence(head, max_length)
        if opener is not None and rest.strip():
            head += _FENCE_CLOSE
            rest = f"{opener}\n{rest}"
        remaining = rest
        if head:
            chunks.append(head)

    return chunks or [text[:max_length]]


def chunk_for(capabilities: ChannelCapabilities, text: str) -> list[str]:
    """Chunk ``text`` for a binding's declared message limit."""
    return chunk_message(text, capabilities.max_message_length)


def _find_split_point(text: str, max_length: int) -> int:
    segment = text[:max_length]

    fences = segment.count(_FENCE)
    if fences:
        last = segment.rfind(_FENCE)
        if fences % 2 == 1 and last > 0:
            # Keep the block that opens here for the next chunk.
            return last
        if fences % 2 == 0 and last + len(_FENCE) > max_length // 2:
            return last + len(_FENCE)
        # Leave room to close a block split in the middle.
        segment = text[: max(max_length - len(_FENCE_CLOSE), 1)]

    for sep in _SOFT_SEPARATORS:
        idx = segment.rfind(sep)
        if idx > max_length // 2:
            return idx + len(sep)

    return len(segment)


def _open_fence(head: str, max_length: int) -> str | None:
    """Return the opening fence line when ``head`` ends inside a code block."""
    if head.count(_FENCE) % 2 == 0:
        return None
    tail = head[head.rfind(_FENCE):]
    if "\n" not in tail:
        return None
    opener = tail.split("\n", 1)[0]
    if len(opener) >= max_length // 4:
        return None
    return opener
