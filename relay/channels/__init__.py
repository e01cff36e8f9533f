"""Channel routing and rendering: bindings, gateway, queues, runs."""

from relay.channels.coordinator import RunCoordinator, StopResult, SubmitResult
from relay.channels.gateway import Gateway
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
from relay.channels.protocol import (
    AgentEngine,
    Binding,
    CanonicalEvent,
    EventKind,
    OutboundMessage,
    Platform,
    RunOutcome,
)
from relay.channels.renderer import RenderSettings, RenderStateMachine, StatusPolicy
from relay.channels.router import CrossChannelRouter, SendResult

__all__ = [
    "AgentEngine",
    "Binding",
    "CanonicalEvent",
    "ContentAppend",
    "CrossChannelRouter",
    "Delete",
    "EventKind",
    "Gateway",
    "OutboundMessage",
    "Platform",
    "RenderInstruction",
    "RenderSettings",
    "RenderStateMachine",
    "Replace",
    "RunCoordinator",
    "RunOutcome",
    "SendResult",
    "StatusPolicy",
    "StatusUpdate",
    "StopResult",
    "SubmitResult",
    "ThreadDetail",
    "Typing",
    "Upload",
]
