"""Streaming framings: turn raw body chunks into frames.

Each provider family uses one of three shapes:

- Server-Sent Events (``event:``/``data:`` lines, blank-line dispatch);
- newline-delimited JSON (one object per line);
- the AWS binary event stream (length-prefixed, CRC-checked messages).

Parsers are incremental: chunk boundaries may fall anywhere, including in the
middle of a UTF-8 sequence or a CRLF pair.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import json
from typing import TYPE_CHECKING, Any

from conduit.errors import ProtocolError
from conduit.events import ErrorKind

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass(frozen=True)
class SSEFrame:
    data: str
    event: str | None = None
    id: str | None = None


@dataclass(frozen=True)
class EventStreamFrame:
    headers: dict[str, Any]
    payload: bytes

    @property
    def message_type(self) -> str | None:
        value = self.headers.get(":message-type")
        return value if isinstance(value, str) else None

    @property
    def event_type(self) -> str | None:
        value = self.headers.get(":event-type") or self.headers.get(":exception-type")
        return value if isinstance(value, str) else None


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Split a byte stream into lines, accepting LF, CRLF and CR endings."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        while True:
            cut = _line_break(buffer)
            if cut is None:
                break
            start, end = cut
            yield buffer[:start]
            buffer = buffer[end:]
    buffer += decoder.decode(b"", final=True)
    if buffer.endswith("\r"):
        buffer = buffer[:-1]
    if buffer:
        yield buffer


def _line_break(buffer: str) -> tuple[int, int] | None:
    for i, ch in enumerate(buffer):
        if ch == "\n":
            return i, i + 1
        if ch == "\r":
            if i + 1 == len(buffer):
                # Might be the first half of a CRLF split across chunks.
                return None
            return (i, i + 2) if buffer[i + 1] == "\n" else (i, i + 1)
    return None


async def iter_sse(chunks: AsyncIterator[bytes]) -> AsyncIterator[SSEFrame]:
    """Parse a ``text/event-stream`` body into frames."""
    data: list[str] = []
    event: str | None = None
    last_id: str | None = None
    async for line in iter_lines(chunks):
        if not line:
            if data:
                yield SSEFrame("\n".join(data), event, last_id)
            data, event = [], None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
        elif name == "event":
            event = value
        elif name == "id":
            last_id = value
        # "retry" and unknown fields are ignored.
    if data:
        yield SSEFrame("\n".join(data), event, last_id)


async def iter_ndjson(chunks: AsyncIterator[bytes]) -> AsyncIterator[Any]:
    """Parse newline-delimited JSON objects."""
    async for line in iter_lines(chunks):
        if not line.strip():
            continue
        try:
            yield json.loads(line)
        except ValueError as e:
            raise ProtocolError(
                f"Invalid JSON line in stream: {line[:200]!r}",
                kind=ErrorKind.MALFORMED_STREAM,
            ) from e


async def iter_event_stream(
    chunks: AsyncIterator[bytes],
) -> AsyncIterator[EventStreamFrame]:
    """Parse the AWS ``application/vnd.amazon.eventstream`` binary framing."""
    from botocore.eventstream import EventStreamBuffer, ParserError

    buffer = EventStreamBuffer()
    async for chunk in chunks:
        buffer.add_data(chunk)
        try:
            for message in buffer:
                yield EventStreamFrame(dict(message.headers), bytes(message.payload))
        except ParserError as e:
            raise ProtocolError(
                f"Corrupt event-stream message: {e}",
                kind=ErrorKind.MALFORMED_STREAM,
            ) from e


def parse_json_frame(data: str) -> Any:
    """Decode a JSON frame payload, mapping failures to a protocol error."""
    try:
        return json.loads(data)
    except ValueError as e:
        raise ProtocolError(
            f"Invalid JSON in stream frame: {data[:200]!r}",
            kind=ErrorKind.MALFORMED_STREAM,
        ) from e
