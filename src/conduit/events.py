"""Canonical stream events shared by every provider family.

Events are small frozen values. A well-formed sequence satisfies:

- for each tool-call index, ``ToolCallStart`` precedes every
  ``ToolCallArgDelta`` for that index, which precede exactly one
  ``ToolCallEnd``;
- ``Finish`` appears exactly once, as the last event.

``StreamNormalizer`` enforces these rules over raw adapter output.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class FinishReason(str, Enum):
    """Why a generation turn ended."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Canonical error vocabulary shared by events and exceptions."""

    # Configuration
    UNKNOWN_PROVIDER = "unknown_provider"
    UNKNOWN_MODEL = "unknown_model"
    BAD_CREDENTIAL = "bad_credential"
    INVALID_CONFIG = "invalid_config"
    # Request validation
    VALIDATION = "validation"
    # Transport
    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    RATE_LIMITED = "rate_limited"
    PROVIDER = "provider"
    # Wire protocol
    MALFORMED_STREAM = "malformed_stream"
    STREAM_TRUNCATED = "stream_truncated"
    UNKNOWN_FINISH = "unknown_finish"
    # Tool loop
    TOOL_MISMATCH = "tool_mismatch"
    TOOL_EXECUTION_FATAL = "tool_execution_fatal"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    index: int
    name: str
    id: str = ""


@dataclass(frozen=True)
class ToolCallArgDelta:
    index: int
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    index: int


@dataclass(frozen=True)
class Usage:
    """Token accounting; also used to accumulate usage across turns."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: Usage) -> Usage:
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass(frozen=True)
class Finish:
    reason: FinishReason
    #: Provider-specific code the reason was mapped from, for diagnostics.
    raw: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    message: str


StreamEvent = Union[
    TextDelta,
    ToolCallStart,
    ToolCallArgDelta,
    ToolCallEnd,
    Usage,
    Finish,
    ErrorEvent,
]

TOOL_CALL_EVENTS = (ToolCallStart, ToolCallArgDelta, ToolCallEnd)


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Serialize an event into a JSON-compatible dict."""
    if isinstance(event, TextDelta):
        return {"type": "text", "text": event.text}
    if isinstance(event, ToolCallStart):
        return {
            "type": "tool_call_start",
            "index": event.index,
            "name": event.name,
            "id": event.id,
        }
    if isinstance(event, ToolCallArgDelta):
        return {
            "type": "tool_call_delta",
            "index": event.index,
            "fragment": event.fragment,
        }
    if isinstance(event, ToolCallEnd):
        return {"type": "tool_call_end", "index": event.index}
    if isinstance(event, Usage):
        return {
            "type": "usage",
            "prompt_tokens": event.prompt_tokens,
            "completion_tokens": event.completion_tokens,
        }
    if isinstance(event, Finish):
        out: dict[str, Any] = {"type": "finish", "reason": event.reason.value}
        if event.raw is not None:
            out["raw"] = event.raw
        return out
    if isinstance(event, ErrorEvent):
        return {"type": "error", "kind": event.kind.value, "message": event.message}
    raise TypeError(f"Not a stream event: {event!r}")


def event_from_dict(data: dict[str, Any]) -> StreamEvent:
    """Inverse of :func:`event_to_dict`. Raises ``ValueError`` on bad input."""
    kind = data.get("type")
    try:
        if kind == "text":
            return TextDelta(str(data["text"]))
        if kind == "tool_call_start":
            return ToolCallStart(
                int(data["index"]), str(data["name"]), str(data.get("id", ""))
            )
        if kind == "tool_call_delta":
            return ToolCallArgDelta(int(data["index"]), str(data["fragment"]))
        if kind == "tool_call_end":
            return ToolCallEnd(int(data["index"]))
        if kind == "usage":
            return Usage(
                int(data.get("prompt_tokens", 0)),
                int(data.get("completion_tokens", 0)),
            )
        if kind == "finish":
            return Finish(FinishReason(data["reason"]), data.get("raw"))
        if kind == "error":
            return ErrorEvent(ErrorKind(data["kind"]), str(data.get("message", "")))
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed event payload: {data!r}") from e
    raise ValueError(f"Unknown event type: {kind!r}")
