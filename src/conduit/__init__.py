"""Conduit: one request shape, many model providers.

Public API:
    - invoke(): Stream canonical events for one target, tool loop included
    - invoke_collect(): Run to completion and return the final message
    - invoke_fanout(): Same request against several targets concurrently
    - ProviderRegistry: Resolves provider/model pairs to adapters
    - GenerationRequest, Message, ToolSpec: Canonical request types
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING

from conduit.config import (
    CredentialSource,
    EnvCredentials,
    FileConfig,
    InvokeConfig,
    ProfileSource,
)
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
)
from conduit.events import (
    ErrorEvent,
    ErrorKind,
    Finish,
    FinishReason,
    StreamEvent,
    TextDelta,
    ToolCallArgDelta,
    ToolCallEnd,
    ToolCallStart,
    Usage,
)
from conduit.fanout import FanoutRouter, Target
from conduit.orchestrator import LoopState, ToolLoop
from conduit.registry import ProviderRegistry
from conduit.retry import RetryPolicy
from conduit.tools import FunctionTools, ToolExecutor
from conduit.types import (
    ContextProvider,
    GenerationRequest,
    ImagePart,
    Message,
    TextPart,
    ToolCallRequest,
    ToolCallResult,
    ToolSpec,
    validate_request,
    with_context,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("conduit")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("conduit").addHandler(logging.NullHandler())


@dataclass(frozen=True)
class Collected:
    """Outcome of :func:`invoke_collect`."""

    message: Message
    usage: Usage
    #: Full conversation, tool turns included, ending with ``message``.
    messages: tuple[Message, ...]
    finish_reason: FinishReason

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def truncated(self) -> bool:
        """True when the final answer stopped at the token limit."""
        return self.finish_reason is FinishReason.LENGTH


def _prepare(
    request: GenerationRequest, context: str | ContextProvider | None
) -> GenerationRequest:
    validate_request(request)
    if context is not None and not isinstance(context, str):
        context = context.describe()
    return with_context(request, context)


def _target_for(request: GenerationRequest, target: str | Target | None) -> Target:
    if target is None:
        return Target.parse(request.model)
    return Target.parse(target)


async def _start(
    request: GenerationRequest,
    target: str | Target | None,
    *,
    registry: ProviderRegistry,
    executor: ToolExecutor | None,
    config: InvokeConfig | None,
    context: str | ContextProvider | None,
    api_key: str | None,
) -> ToolLoop:
    request = _prepare(request, context)
    resolved_target = _target_for(request, target)
    try:
        resolved = await registry.resolve(
            resolved_target.provider,
            resolved_target.model,
            api_key or resolved_target.api_key,
        )
    except ConduitError as e:
        if not e.partial:
            e.partial = request.messages
        raise
    return ToolLoop(resolved, request, executor=executor, config=config)


async def invoke(
    request: GenerationRequest,
    target: str | Target | None = None,
    *,
    registry: ProviderRegistry,
    executor: ToolExecutor | None = None,
    config: InvokeConfig | None = None,
    context: str | ContextProvider | None = None,
    api_key: str | None = None,
) -> AsyncIterator[StreamEvent]:
    """Stream the canonical events of one invocation, tool loop included.

    Args:
        request: The request to send.
        target: ``provider/model`` string or :class:`Target`. Defaults to
            ``request.model`` read as ``provider/model``.
        registry: Resolves the target to an adapter.
        executor: Runs tool calls the model issues.
        config: Iteration bound, retry policy, deadlines.
        context: Host description (or a provider of one) inserted as a
            system segment ahead of the first user message.
        api_key: Credential overriding environment and config file.

    Raises:
        ConduitError: On any fatal failure, with ``partial`` holding the
            conversation accumulated so far.

    Example:
        async with ProviderRegistry() as registry:
            async for event in invoke(request, "openai/gpt-4o-mini", registry=registry):
                if isinstance(event, TextDelta):
                    print(event.text, end="")
    """
    loop = await _start(
        request,
        target,
        registry=registry,
        executor=executor,
        config=config,
        context=context,
        api_key=api_key,
    )
    async for event in loop.run():
        yield event


async def invoke_collect(
    request: GenerationRequest,
    target: str | Target | None = None,
    *,
    registry: ProviderRegistry,
    executor: ToolExecutor | None = None,
    config: InvokeConfig | None = None,
    context: str | ContextProvider | None = None,
    api_key: str | None = None,
) -> Collected:
    """Run one invocation to completion and return its final message.

    Example:
        result = await invoke_collect(request, "mock/echo", registry=registry)
        print(result.text, result.usage.total_tokens)
    """
    loop = await _start(
        request,
        target,
        registry=registry,
        executor=executor,
        config=config,
        context=context,
        api_key=api_key,
    )
    async for _ in loop.run():
        pass
    message = loop.final_message
    if message is None or loop.loop.finish_reason is None:
        raise ProtocolError(
            "Tool loop ended without a final message", kind=ErrorKind.MALFORMED_STREAM
        )
    return Collected(
        message=message,
        usage=loop.usage,
        messages=loop.messages,
        finish_reason=loop.loop.finish_reason,
    )


async def invoke_fanout(
    request: GenerationRequest,
    targets: Iterable[str | Target],
    *,
    registry: ProviderRegistry,
    executor: ToolExecutor | None = None,
    config: InvokeConfig | None = None,
    context: str | ContextProvider | None = None,
) -> AsyncIterator[tuple[str, StreamEvent]]:
    """Send *request* to every target at once; yield ``(label, event)`` pairs.

    A target that fails yields an ``ErrorEvent`` then ``Finish(error)``
    under its label; the others carry on.

    Example:
        async for label, event in invoke_fanout(
            request, ["openai/gpt-4o-mini", "anthropic/claude-3-5-haiku"],
            registry=registry,
        ):
            print(label, event)
    """
    request = _prepare(request, context)
    router = FanoutRouter(registry, executor=executor, config=config)
    async for item in router.run(request, targets):
        yield item


__all__ = [
    "APIError",
    "Collected",
    "ConduitError",
    "ConfigurationError",
    "ConnectionLostError",
    "ContextProvider",
    "CredentialSource",
    "EnvCredentials",
    "ErrorEvent",
    "ErrorKind",
    "FanoutRouter",
    "FileConfig",
    "Finish",
    "FinishReason",
    "FunctionTools",
    "GenerationRequest",
    "ImagePart",
    "InvokeConfig",
    "LoopState",
    "Message",
    "ProfileSource",
    "ProtocolError",
    "ProviderRegistry",
    "RateLimitError",
    "RequestTimeoutError",
    "RetryPolicy",
    "StreamEvent",
    "Target",
    "TextDelta",
    "TextPart",
    "ToolCallArgDelta",
    "ToolCallEnd",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCallStart",
    "ToolError",
    "ToolExecutionFatalError",
    "ToolExecutor",
    "ToolLoop",
    "ToolLoopExceededError",
    "ToolMismatchError",
    "ToolSpec",
    "Usage",
    "ValidationError",
    "invoke",
    "invoke_collect",
    "invoke_fanout",
]
