"""Canonical, provider-agnostic request and message types.

Everything here is a frozen value with no I/O. Conversations are tuples of
messages; a new snapshot is produced by appending, never by mutation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Protocol, Union

from conduit.errors import ValidationError

Role = Literal["system", "user", "assistant", "tool"]
ResponseFormat = Literal["text", "json"]

_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Image reference: an ``https://`` URL or a ``data:`` URI."""

    url: str
    mime_type: str | None = None


@dataclass(frozen=True)
class ToolCallRequest:
    """A model-issued request to run a declared tool."""

    id: str
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    """Outcome of one tool call, matched to its request by ``id``."""

    id: str
    content: str
    is_error: bool = False
    #: Name of the tool that produced the result; some wire formats need it.
    name: str | None = None


Part = Union[TextPart, ImagePart, ToolCallRequest, ToolCallResult]


@dataclass(frozen=True)
class Message:
    """One conversation turn: a role plus ordered, typed content parts."""

    role: Role
    parts: tuple[Part, ...] = ()
    name: str | None = None

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValidationError(
                f"Unknown message role: {self.role!r}",
                hint="Use one of: system, user, assistant, tool.",
            )
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))

    @classmethod
    def system(cls, text: str) -> Message:
        return cls("system", (TextPart(text),))

    @classmethod
    def user(
        cls, content: str | list[Part] | tuple[Part, ...], *, name: str | None = None
    ) -> Message:
        parts = (TextPart(content),) if isinstance(content, str) else tuple(content)
        return cls("user", parts, name=name)

    @classmethod
    def assistant(
        cls,
        text: str = "",
        *,
        tool_calls: tuple[ToolCallRequest, ...] | list[ToolCallRequest] = (),
    ) -> Message:
        parts: list[Part] = [TextPart(text)] if text else []
        parts.extend(tool_calls)
        return cls("assistant", tuple(parts))

    @classmethod
    def tool(cls, result: ToolCallResult) -> Message:
        return cls("tool", (result,))

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> tuple[ToolCallRequest, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolCallRequest))

    @property
    def tool_results(self) -> tuple[ToolCallResult, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolCallResult))


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may call; ``parameters`` is a JSON schema."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class GenerationRequest:
    """Immutable request submitted to a provider.

    ``model`` is either a bare model name (the target supplies the provider)
    or a ``provider/model`` identifier.
    """

    model: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()
    tools: tuple[ToolSpec, ...] = ()
    response_format: ResponseFormat | None = None
    #: JSON schema for structured output; implies ``response_format="json"``.
    response_schema: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        for name in ("messages", "stop", "tools"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    def append(self, *messages: Message) -> GenerationRequest:
        """Return a new request with *messages* appended to the conversation."""
        return replace(self, messages=self.messages + tuple(messages))

    def tool(self, name: str) -> ToolSpec | None:
        return next((t for t in self.tools if t.name == name), None)

    @property
    def wants_json(self) -> bool:
        return self.response_format == "json" or self.response_schema is not None


class ContextProvider(Protocol):
    """Supplies an opaque description of the host environment."""

    def describe(self) -> str | None: ...


def validate_request(request: GenerationRequest) -> None:
    """Reject malformed requests before any network call."""
    if not request.model or not request.model.strip():
        raise ValidationError(
            "Model identifier must not be empty",
            hint="Pass a model name such as 'gpt-4o-mini' or 'openai/gpt-4o-mini'.",
        )
    if not request.messages:
        raise ValidationError("Request must contain at least one message")
    if request.max_tokens is not None and request.max_tokens < 1:
        raise ValidationError(f"max_tokens must be >= 1, got {request.max_tokens}")

    names: set[str] = set()
    for spec in request.tools:
        if not spec.name:
            raise ValidationError("Tool name must not be empty")
        if spec.name in names:
            raise ValidationError(
                f"Duplicate tool name: {spec.name!r}",
                hint="Tool names must be unique within a request.",
            )
        names.add(spec.name)

    for message in request.messages:
        for call in message.tool_calls:
            if call.name not in names:
                raise ValidationError(
                    f"Message references undeclared tool {call.name!r}",
                    hint="Declare every tool the conversation uses in request.tools.",
                )


def with_context(request: GenerationRequest, context: str | None) -> GenerationRequest:
    """Insert a host-context system segment ahead of the first user message."""
    if not context:
        return request
    messages = list(request.messages)
    at = next((i for i, m in enumerate(messages) if m.role == "user"), 0)
    messages.insert(at, Message.system(context))
    return replace(request, messages=tuple(messages))
