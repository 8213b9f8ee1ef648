"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: byte-stream builders for decoder
tests, an event collector, and wire fixture loading.
"""

from __future__ import annotations

import binascii
import json
from pathlib import Path
import struct
from typing import TYPE_CHECKING, Any

from conduit.profiles import AuthDescriptor, AuthKind, ProviderProfile

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

MOCK_PROFILE = ProviderProfile(
    id="mock",
    family="mock",
    endpoint="http://mock.invalid",
    auth=AuthDescriptor(kind=AuthKind.NONE),
)

WIRE_FIXTURES = Path(__file__).parent / "fixtures" / "wire"


def load_wire(name: str) -> bytes:
    """Captured provider response body from ``tests/fixtures/wire``."""
    return (WIRE_FIXTURES / name).read_bytes()


async def chunked(data: bytes, size: int | None = None) -> AsyncIterator[bytes]:
    """Deliver *data* in fixed-size chunks (one chunk when *size* is None)."""
    if size is None:
        yield data
        return
    for i in range(0, len(data), size):
        yield data[i : i + size]


async def split_at(data: bytes, cuts: Iterable[int]) -> AsyncIterator[bytes]:
    """Deliver *data* split at the given byte offsets."""
    start = 0
    for cut in sorted(set(cuts)):
        if 0 < cut < len(data):
            yield data[start:cut]
            start = cut
    yield data[start:]


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [e async for e in events]


def sse(*payloads: Any, event: str | None = None) -> bytes:
    """Encode JSON payloads (or raw strings) as SSE ``data:`` frames."""
    out = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        prefix = f"event: {event}\n" if event else ""
        out.append(f"{prefix}data: {data}\n\n")
    return "".join(out).encode("utf-8")


def event_stream_message(headers: dict[str, str], payload: bytes) -> bytes:
    """Encode one ``application/vnd.amazon.eventstream`` message.

    Only string-typed headers (type 7) are produced, which is all Bedrock
    sends.
    """
    encoded_headers = b""
    for name, value in headers.items():
        raw_name = name.encode("utf-8")
        raw_value = value.encode("utf-8")
        encoded_headers += (
            struct.pack("!B", len(raw_name))
            + raw_name
            + struct.pack("!BH", 7, len(raw_value))
            + raw_value
        )
    total = 12 + len(encoded_headers) + len(payload) + 4
    prelude = struct.pack("!II", total, len(encoded_headers))
    prelude_crc = struct.pack("!I", binascii.crc32(prelude) & 0xFFFFFFFF)
    message = prelude + prelude_crc + encoded_headers + payload
    return message + struct.pack("!I", binascii.crc32(message) & 0xFFFFFFFF)
