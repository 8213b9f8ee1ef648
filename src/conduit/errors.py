"""Exception hierarchy for conduit.

Every error carries a canonical :class:`~conduit.events.ErrorKind`. Errors
raised out of a tool loop also carry the partial conversation accumulated so
far (``partial``) so callers can decide whether to resume manually.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from conduit.events import ErrorEvent, ErrorKind

if TYPE_CHECKING:
    from collections.abc import Iterator

    from conduit.types import Message


class ConduitError(Exception):
    """Base exception for all conduit errors."""

    default_kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        kind: ErrorKind | None = None,
        partial: tuple[Message, ...] = (),
        incomplete: bool = False,
    ) -> None:
        super().__init__(message)
        self.hint = hint
        self.kind = kind or self.default_kind
        self.partial = partial
        self.incomplete = incomplete


class ConfigurationError(ConduitError):
    """Unknown provider/model, bad credential or invalid settings. Never retried."""

    default_kind = ErrorKind.INVALID_CONFIG


class ValidationError(ConduitError):
    """The request was rejected before any network call."""

    default_kind = ErrorKind.VALIDATION


class APIError(ConduitError):
    """A provider call failed.

    Transport and adapters attach retry metadata so the tool loop can perform
    bounded retries without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        kind: ErrorKind | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint, kind=kind)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429 or a provider throttling payload)."""

    default_kind = ErrorKind.RATE_LIMITED


class RequestTimeoutError(APIError):
    """A network deadline expired."""

    default_kind = ErrorKind.TIMEOUT


class ConnectionLostError(APIError):
    """The connection failed or was reset before a response arrived."""

    default_kind = ErrorKind.CONNECTION_RESET


class ProtocolError(ConduitError):
    """The wire stream was malformed, truncated or used an unknown finish code.

    Never retried: part of the stream has already been consumed.
    """

    default_kind = ErrorKind.MALFORMED_STREAM

    def __init__(
        self, message: str, *, hint: str | None = None, kind: ErrorKind | None = None
    ) -> None:
        super().__init__(message, hint=hint, kind=kind, incomplete=True)


class ToolError(ConduitError):
    """Base class for fatal tool-loop conditions."""


class ToolMismatchError(ToolError):
    """A pending tool call had no matching result."""

    default_kind = ErrorKind.TOOL_MISMATCH


class ToolExecutionFatalError(ToolError):
    """The tool executor signalled that the loop must stop."""

    default_kind = ErrorKind.TOOL_EXECUTION_FATAL


class ToolLoopExceededError(ToolError):
    """The loop hit its iteration bound without a terminal answer."""

    default_kind = ErrorKind.TOOL_LOOP_EXCEEDED


_KIND_TO_ERROR: dict[ErrorKind, type[ConduitError]] = {
    ErrorKind.UNKNOWN_PROVIDER: ConfigurationError,
    ErrorKind.UNKNOWN_MODEL: ConfigurationError,
    ErrorKind.BAD_CREDENTIAL: ConfigurationError,
    ErrorKind.INVALID_CONFIG: ConfigurationError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.TIMEOUT: RequestTimeoutError,
    ErrorKind.CONNECTION_RESET: ConnectionLostError,
    ErrorKind.RATE_LIMITED: RateLimitError,
    ErrorKind.PROVIDER: APIError,
    ErrorKind.MALFORMED_STREAM: ProtocolError,
    ErrorKind.STREAM_TRUNCATED: ProtocolError,
    ErrorKind.UNKNOWN_FINISH: ProtocolError,
    ErrorKind.TOOL_MISMATCH: ToolMismatchError,
    ErrorKind.TOOL_EXECUTION_FATAL: ToolExecutionFatalError,
    ErrorKind.TOOL_LOOP_EXCEEDED: ToolLoopExceededError,
}


def error_from_event(event: ErrorEvent, *, provider: str | None = None) -> ConduitError:
    """Build the exception matching an in-stream ``ErrorEvent``.

    Errors surfaced inside a stream arrive after bytes were consumed, so API
    errors built here are never retryable.
    """
    cls = _KIND_TO_ERROR.get(event.kind, APIError)
    if issubclass(cls, APIError):
        return cls(
            event.message,
            kind=event.kind,
            retryable=False,
            provider=provider,
            phase="stream",
        )
    return cls(event.message, kind=event.kind)


def event_from_error(exc: ConduitError) -> ErrorEvent:
    """Project an exception onto the canonical event vocabulary."""
    return ErrorEvent(exc.kind, str(exc))


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, once each."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
