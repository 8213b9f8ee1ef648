"""Canonical types and event serialization."""

from __future__ import annotations

from typing import Any

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from conduit.errors import ValidationError
from conduit.events import (
    ErrorEvent,
    ErrorKind,
    Finish,
    FinishReason,
    TextDelta,
    ToolCallArgDelta,
    ToolCallEnd,
    ToolCallStart,
    Usage,
    event_from_dict,
    event_to_dict,
)
from conduit.types import (
    GenerationRequest,
    Message,
    TextPart,
    ToolCallRequest,
    ToolCallResult,
    ToolSpec,
    validate_request,
    with_context,
)

pytestmark = pytest.mark.unit


def _request(**overrides: Any) -> GenerationRequest:
    fields: dict[str, Any] = {
        "model": "openai/gpt-4o-mini",
        "messages": [Message.user("hi")],
    }
    fields.update(overrides)
    return GenerationRequest(**fields)


def test_request_coerces_sequences_to_tuples() -> None:
    request = _request(stop=["END"], tools=[ToolSpec("f")])
    assert isinstance(request.messages, tuple)
    assert request.stop == ("END",)
    assert isinstance(request.tools, tuple)


def test_append_returns_new_snapshot() -> None:
    request = _request()
    longer = request.append(Message.assistant("hello"))

    assert len(request.messages) == 1
    assert len(longer.messages) == 2
    assert longer.messages[-1].text == "hello"


def test_message_rejects_unknown_role() -> None:
    with pytest.raises(ValidationError) as exc:
        Message("robot", (TextPart("x"),))  # type: ignore[arg-type]
    assert exc.value.hint


def test_message_accessors_split_parts_by_type() -> None:
    call = ToolCallRequest("c1", "f", {"x": 1})
    message = Message.assistant("thinking", tool_calls=[call])
    assert message.text == "thinking"
    assert message.tool_calls == (call,)
    assert Message.tool(ToolCallResult("c1", "ok")).tool_results[0].content == "ok"


@pytest.mark.parametrize(
    ("overrides", "fragment"),
    [
        ({"model": "  "}, "must not be empty"),
        ({"messages": []}, "at least one message"),
        ({"max_tokens": 0}, "max_tokens"),
        ({"tools": [ToolSpec("f"), ToolSpec("f")]}, "Duplicate tool"),
        ({"tools": [ToolSpec("")]}, "must not be empty"),
    ],
)
def test_validate_request_rejects_malformed_requests(
    overrides: dict[str, Any], fragment: str
) -> None:
    with pytest.raises(ValidationError) as exc:
        validate_request(_request(**overrides))
    assert fragment in str(exc.value)


def test_validate_request_rejects_history_with_undeclared_tool() -> None:
    request = _request(
        messages=[
            Message.user("go"),
            Message.assistant(tool_calls=[ToolCallRequest("c1", "ghost")]),
        ]
    )
    with pytest.raises(ValidationError, match="undeclared tool 'ghost'"):
        validate_request(request)


def test_with_context_inserts_system_segment_before_first_user_message() -> None:
    request = _request(messages=[Message.system("rules"), Message.user("hi")])
    updated = with_context(request, "cwd=/tmp")

    assert [m.role for m in updated.messages] == ["system", "system", "user"]
    assert updated.messages[1].text == "cwd=/tmp"
    assert with_context(request, None) is request


def test_wants_json_follows_schema_or_format() -> None:
    assert _request(response_format="json").wants_json
    assert _request(response_schema={"type": "object"}).wants_json
    assert not _request().wants_json


def test_usage_adds_componentwise() -> None:
    total = Usage(1, 2) + Usage(3, 4)
    assert total == Usage(4, 6)
    assert total.total_tokens == 10


_EVENTS = st.one_of(
    st.builds(TextDelta, st.text(max_size=20)),
    st.builds(
        ToolCallStart, st.integers(0, 9), st.text(max_size=8), st.text(max_size=8)
    ),
    st.builds(ToolCallArgDelta, st.integers(0, 9), st.text(max_size=20)),
    st.builds(ToolCallEnd, st.integers(0, 9)),
    st.builds(Usage, st.integers(0, 10_000), st.integers(0, 10_000)),
    st.builds(
        Finish,
        st.sampled_from(list(FinishReason)),
        st.one_of(st.none(), st.text(max_size=8)),
    ),
    st.builds(ErrorEvent, st.sampled_from(list(ErrorKind)), st.text(max_size=20)),
)


@given(event=_EVENTS)
@settings(max_examples=100, deadline=None, derandomize=True)
def test_event_dict_form_is_lossless(event: Any) -> None:
    """Property: the mock wire's event encoding loses nothing."""
    assert event_from_dict(event_to_dict(event)) == event


@pytest.mark.parametrize(
    "payload",
    [{"type": "nope"}, {"type": "text"}, {"type": "finish", "reason": "later"}],
)
def test_event_from_dict_rejects_bad_payloads(payload: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        event_from_dict(payload)
