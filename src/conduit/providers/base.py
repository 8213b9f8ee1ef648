"""Adapter protocol and helpers shared by provider families.

An adapter is a protocol translator bound to one provider family:

- ``encode`` turns a canonical request into a :class:`WireRequest`
  (deterministic, no I/O);
- ``decode_stream`` turns raw body chunks into canonical events;
- ``decode_once`` turns a complete non-streaming body into the equivalent
  finite event list;
- ``decode_error`` maps a provider error body onto the canonical vocabulary.

Adapters are only ever selected through the registry's family mapping.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from conduit.auth import NoAuth
from conduit.events import (
    ErrorEvent,
    ErrorKind,
    Finish,
    FinishReason,
    StreamEvent,
    ToolCallArgDelta,
    ToolCallEnd,
    ToolCallStart,
)
from conduit.transport import describe_error_body

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from conduit.auth import Authenticator
    from conduit.profiles import ProviderProfile
    from conduit.transport import Transport, WireRequest
    from conduit.types import GenerationRequest, ImagePart


@runtime_checkable
class ProviderAdapter(Protocol):
    """Closed capability set every provider family implements."""

    family: ClassVar[str]
    profile: ProviderProfile
    #: Dedicated transport, or None to use the registry's shared pool.
    transport: Transport | None

    def encode(
        self,
        request: GenerationRequest,
        profile: ProviderProfile,
        *,
        model: str | None = None,
        stream: bool = True,
    ) -> WireRequest: ...

    def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]: ...

    def decode_once(self, body: Any) -> list[StreamEvent]: ...

    def decode_error(
        self, status: int, body: bytes
    ) -> tuple[str, ErrorKind | None]: ...

    async def authorize(self, wire: WireRequest) -> WireRequest: ...


class BaseAdapter:
    """Common state and defaults for adapters."""

    family: ClassVar[str] = ""

    def __init__(
        self, profile: ProviderProfile, auth: Authenticator | None = None
    ) -> None:
        self.profile = profile
        self.auth: Authenticator = auth or NoAuth()
        self.transport: Transport | None = None

    async def authorize(self, wire: WireRequest) -> WireRequest:
        """Attach credential material right before sending."""
        return await self.auth.apply(wire)

    def decode_error(self, status: int, body: bytes) -> tuple[str, ErrorKind | None]:
        return describe_error_body(body), None

    def _headers(self) -> dict[str, str]:
        return dict(self.profile.headers)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.profile.id!r})"


class ToolCallTracker:
    """Turns index-addressed tool-call deltas into ordered canonical events.

    Emits ``ErrorEvent(MALFORMED_STREAM)`` for an argument fragment whose index
    was never started.
    """

    def __init__(self) -> None:
        self._open: dict[int, str] = {}
        self._closed: set[int] = set()

    @property
    def seen_any(self) -> bool:
        return bool(self._open or self._closed)

    def is_open(self, index: int) -> bool:
        return index in self._open

    def start(self, index: int, name: str, call_id: str = "") -> list[StreamEvent]:
        if index in self._open or index in self._closed:
            return []
        self._open[index] = name
        return [ToolCallStart(index, name, call_id)]

    def delta(self, index: int, fragment: str) -> list[StreamEvent]:
        if index not in self._open:
            return [
                ErrorEvent(
                    ErrorKind.MALFORMED_STREAM,
                    f"Argument fragment for tool call {index} before its start",
                )
            ]
        if not fragment:
            return []
        return [ToolCallArgDelta(index, fragment)]

    def end(self, index: int) -> list[StreamEvent]:
        if index not in self._open:
            return []
        del self._open[index]
        self._closed.add(index)
        return [ToolCallEnd(index)]

    def close_all(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for index in sorted(self._open):
            events.extend(self.end(index))
        return events

    def complete(
        self, index: int, name: str, call_id: str, arguments: Any
    ) -> list[StreamEvent]:
        """Emit a whole tool call delivered in one piece."""
        fragment = arguments if isinstance(arguments, str) else json.dumps(arguments)
        return [
            *self.start(index, name, call_id),
            *self.delta(index, fragment),
            *self.end(index),
        ]


def map_finish(
    code: str | None, table: Mapping[str, FinishReason]
) -> list[StreamEvent]:
    """Map a provider finish code; unknown codes become an error."""
    if code is None:
        return []
    reason = table.get(code)
    if reason is None:
        reason = table.get(code.lower())
    if reason is not None:
        return [Finish(reason, raw=code)]
    return [
        ErrorEvent(ErrorKind.UNKNOWN_FINISH, f"Unrecognized finish reason: {code!r}"),
        Finish(FinishReason.ERROR, raw=code),
    ]


def append_merged(
    messages: list[dict[str, Any]], msg: dict[str, Any], *, content_key: str = "content"
) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic and Gemini require strict user/assistant alternation, so
    consecutive same-role messages (a tool result followed by a user prompt,
    say) are merged into one message's block list.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev[content_key] = list(prev[content_key]) + list(msg[content_key])
    else:
        messages.append(msg)


def split_data_uri(url: str) -> tuple[str, str] | None:
    """Return ``(mime_type, base64_data)`` for a base64 ``data:`` URI."""
    if not url.startswith("data:"):
        return None
    header, sep, data = url[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    return header[: -len(";base64")] or "application/octet-stream", data


def image_mime(part: ImagePart) -> str:
    if part.mime_type:
        return part.mime_type
    inline = split_data_uri(part.url)
    return inline[0] if inline else "image/jpeg"


def arguments_json(arguments: Any) -> str:
    """Serialize tool-call arguments the way OpenAI-style wires expect."""
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))


def arguments_object(arguments: Any) -> Any:
    """Decode string arguments for wires that carry them as JSON objects."""
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments) if arguments else {}
    except ValueError:
        return {}
