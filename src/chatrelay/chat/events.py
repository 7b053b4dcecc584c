"""Typed events produced by the engine and consumed by the round loop."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Literal, Union

from .content import Part

ToolCallStatus = Literal["success", "error", "cancelled"]
TERMINAL_TOOL_STATUSES: frozenset[str] = frozenset({"success", "error", "cancelled"})


@dataclass
class ThoughtSummary:
    subject: str
    description: str


@dataclass
class ToolCallRequest:
    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    is_client_initiated: bool = False
    prompt_id: str | None = None


@dataclass
class ToolCallResponse:
    call_id: str
    response_parts: list[Part] | None
    error: str | None = None


@dataclass
class CompletedToolCall:
    status: ToolCallStatus
    request: ToolCallRequest
    response: ToolCallResponse | None = None

    @property
    def response_parts(self) -> list[Part] | None:
        if self.response is None:
            return None
        return self.response.response_parts


@dataclass
class ThoughtEvent:
    type: ClassVar[str] = "thought"
    value: ThoughtSummary


@dataclass
class ContentEvent:
    type: ClassVar[str] = "content"
    value: str


@dataclass
class ToolCallRequestEvent:
    type: ClassVar[str] = "tool_call_request"
    value: ToolCallRequest


@dataclass
class UserCancelledEvent:
    type: ClassVar[str] = "user_cancelled"


@dataclass
class ErrorEvent:
    type: ClassVar[str] = "error"
    value: dict[str, Any]


@dataclass
class ChatCompressedEvent:
    type: ClassVar[str] = "chat_compressed"
    value: dict[str, int]


StreamEvent = Union[
    ThoughtEvent,
    ContentEvent,
    ToolCallRequestEvent,
    UserCancelledEvent,
    ErrorEvent,
    ChatCompressedEvent,
]


@dataclass
class ToolExecutionStatus:
    """Synthetic marker for entering and leaving tool execution."""

    type: ClassVar[str] = "tool_execution"
    status: Literal["started", "finished", "stopped"]
    calls: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    message: str | None = None

    @property
    def value(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "calls": self.calls}
        if self.counts:
            payload["counts"] = self.counts
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass
class NoQueryEvent:
    """Emitted once when query preparation decides not to call the engine."""

    type: ClassVar[str] = "no_query"
    message: str = "No query to send"


TurnEvent = Union[StreamEvent, ToolExecutionStatus, NoQueryEvent]


def event_value(event: Any) -> Any:
    """Return the JSON-ready payload of an event, or ``None`` when it has none."""

    value = getattr(event, "value", None)
    if value is None:
        return None
    if isinstance(value, (ThoughtSummary, ToolCallRequest)):
        return asdict(value)
    return value


__all__ = [
    "ChatCompressedEvent",
    "CompletedToolCall",
    "ContentEvent",
    "ErrorEvent",
    "NoQueryEvent",
    "StreamEvent",
    "TERMINAL_TOOL_STATUSES",
    "ThoughtEvent",
    "ThoughtSummary",
    "ToolCallRequest",
    "ToolCallRequestEvent",
    "ToolCallResponse",
    "ToolCallStatus",
    "ToolExecutionStatus",
    "TurnEvent",
    "UserCancelledEvent",
    "event_value",
]
