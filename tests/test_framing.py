"""Framing parsers: SSE, NDJSON and the AWS event stream.

The key property is chunk independence: however the body is split across
network reads, the parsed frames are the same.
"""

from __future__ import annotations

import asyncio
import json

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from conduit.errors import ProtocolError
from conduit.events import ErrorKind
from conduit.framing import (
    iter_event_stream,
    iter_lines,
    iter_ndjson,
    iter_sse,
    parse_json_frame,
)
from tests.helpers import chunked, collect, event_stream_message, load_wire, split_at

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_iter_lines_accepts_lf_crlf_and_cr() -> None:
    lines = await collect(iter_lines(chunked(b"a\nb\r\nc\rd")))
    assert lines == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_iter_lines_joins_crlf_split_across_chunks() -> None:
    lines = await collect(iter_lines(split_at(b"one\r\ntwo\r\n", [4])))
    assert lines == ["one", "two"]


@pytest.mark.asyncio
async def test_iter_lines_reassembles_split_utf8_sequences() -> None:
    data = "héllo ☃\n".encode()
    lines = await collect(iter_lines(chunked(data, 1)))
    assert lines == ["héllo ☃"]


@pytest.mark.asyncio
async def test_iter_sse_parses_event_names_comments_and_multiline_data() -> None:
    body = (
        b": keep-alive\n"
        b"event: message_start\n"
        b"data: {\"a\":\n"
        b"data: 1}\n"
        b"id: 7\n"
        b"\n"
        b"data: tail\n"
    )
    frames = await collect(iter_sse(chunked(body)))

    assert [(f.event, f.data, f.id) for f in frames] == [
        ("message_start", '{"a":\n1}', "7"),
        (None, "tail", "7"),
    ]


@given(cuts=st.lists(st.integers(min_value=1, max_value=2000), max_size=12))
@settings(max_examples=40, deadline=None, derandomize=True)
def test_sse_frames_do_not_depend_on_chunk_boundaries(cuts: list[int]) -> None:
    """Property: any split of a captured SSE body parses to the same frames."""
    body = load_wire("anthropic_tool_use.sse")

    async def parse(chunks):
        return [(f.event, f.data) for f in await collect(iter_sse(chunks))]

    whole = asyncio.run(parse(chunked(body)))
    split = asyncio.run(parse(split_at(body, cuts)))
    assert split == whole
    assert len(whole) == 12


@pytest.mark.asyncio
async def test_iter_ndjson_skips_blank_lines() -> None:
    body = b'{"a": 1}\n\n{"b": 2}'
    assert await collect(iter_ndjson(chunked(body, 3))) == [{"a": 1}, {"b": 2}]


@pytest.mark.asyncio
async def test_iter_ndjson_rejects_invalid_lines() -> None:
    with pytest.raises(ProtocolError) as exc:
        await collect(iter_ndjson(chunked(b'{"a": 1}\nnot json\n')))
    assert exc.value.kind is ErrorKind.MALFORMED_STREAM


def test_parse_json_frame_maps_errors_to_protocol_error() -> None:
    assert parse_json_frame('{"x": [1]}') == {"x": [1]}
    with pytest.raises(ProtocolError):
        parse_json_frame("{truncated")


@pytest.mark.asyncio
async def test_iter_event_stream_yields_headers_and_payload() -> None:
    payload = json.dumps({"bytes": "e30="}).encode()
    message = event_stream_message(
        {":message-type": "event", ":event-type": "chunk"}, payload
    )
    frames = await collect(iter_event_stream(chunked(message * 2, 5)))

    assert len(frames) == 2
    assert frames[0].message_type == "event"
    assert frames[0].event_type == "chunk"
    assert frames[0].payload == payload


@pytest.mark.asyncio
async def test_iter_event_stream_rejects_corrupt_checksum() -> None:
    message = bytearray(event_stream_message({":message-type": "event"}, b"{}"))
    message[-1] ^= 0xFF
    with pytest.raises(ProtocolError):
        await collect(iter_event_stream(chunked(bytes(message))))
