"""Error hierarchy and event/exception projection."""

from __future__ import annotations

import pytest

from conduit.errors import (
    APIError,
    ConduitError,
    ConfigurationError,
    ConnectionLostError,
    ProtocolError,
    RateLimitError,
    RequestTimeoutError,
    ToolError,
    ToolExecutionFatalError,
    ToolLoopExceededError,
    ToolMismatchError,
    ValidationError,
    _walk_exception_chain,
    error_from_event,
    event_from_error,
)
from conduit.events import ErrorEvent, ErrorKind

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("kind", "cls"),
    [
        (ErrorKind.UNKNOWN_PROVIDER, ConfigurationError),
        (ErrorKind.BAD_CREDENTIAL, ConfigurationError),
        (ErrorKind.VALIDATION, ValidationError),
        (ErrorKind.TIMEOUT, RequestTimeoutError),
        (ErrorKind.CONNECTION_RESET, ConnectionLostError),
        (ErrorKind.RATE_LIMITED, RateLimitError),
        (ErrorKind.PROVIDER, APIError),
        (ErrorKind.STREAM_TRUNCATED, ProtocolError),
        (ErrorKind.UNKNOWN_FINISH, ProtocolError),
        (ErrorKind.TOOL_MISMATCH, ToolMismatchError),
        (ErrorKind.TOOL_EXECUTION_FATAL, ToolExecutionFatalError),
        (ErrorKind.TOOL_LOOP_EXCEEDED, ToolLoopExceededError),
    ],
)
def test_error_from_event_picks_class_and_keeps_kind(
    kind: ErrorKind, cls: type[ConduitError]
) -> None:
    err = error_from_event(ErrorEvent(kind, "boom"), provider="openai")
    assert type(err) is cls
    assert err.kind is kind
    assert str(err) == "boom"


def test_in_stream_api_errors_are_never_retryable() -> None:
    err = error_from_event(ErrorEvent(ErrorKind.RATE_LIMITED, "slow"), provider="x")
    assert isinstance(err, RateLimitError)
    assert err.retryable is False
    assert err.phase == "stream"
    assert err.provider == "x"


def test_event_from_error_round_trips_kind_and_message() -> None:
    err = RateLimitError("429", retryable=True, status_code=429)
    assert event_from_error(err) == ErrorEvent(ErrorKind.RATE_LIMITED, "429")


def test_default_kinds_and_hierarchy() -> None:
    assert ConfigurationError("x").kind is ErrorKind.INVALID_CONFIG
    assert ProtocolError("x").kind is ErrorKind.MALFORMED_STREAM
    assert ProtocolError("x").incomplete is True
    assert issubclass(ToolMismatchError, ToolError)
    assert issubclass(RateLimitError, APIError)


def test_partial_and_hint_are_carried() -> None:
    err = ToolLoopExceededError("too many turns", hint="raise the bound")
    assert err.partial == ()
    assert err.hint == "raise the bound"


def test_walk_exception_chain_handles_cycles() -> None:
    a = ValueError("a")
    b = RuntimeError("b")
    a.__cause__ = b
    b.__context__ = a
    assert {str(e) for e in _walk_exception_chain(a)} == {"a", "b"}
