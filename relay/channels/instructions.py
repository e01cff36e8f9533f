"""Render instructions: the ordered output of the agent engine.

Each variant describes a single UI effect. The renderer dispatches on the
concrete type; no textual markers are involved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class StatusUpdate:
    """Transient progress label, e.g. a tool call in flight."""

    label: str


@dataclass(frozen=True)
class ContentAppend:
    """Interim response text; buffered until proven interim or final."""

    text: str


@dataclass(frozen=True)
class Replace:
    """The definitive final answer."""

    text: str


@dataclass(frozen=True)
class ThreadDetail:
    """Secondary detail (tool output, usage) for the platform's detail surface."""

    text: str


@dataclass(frozen=True)
class Typing:
    active: bool


@dataclass(frozen=True)
class Upload:
    path: str
    title: str | None = None


@dataclass(frozen=True)
class Delete:
    """Remove every message the run produced."""


RenderInstruction = Union[
    StatusUpdate, ContentAppend, Replace, ThreadDetail, Typing, Upload, Delete
]
