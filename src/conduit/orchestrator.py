"""Tool-call orchestration: the multi-turn loop between a model and its tools.

State machine::

    IDLE -> AWAITING_MODEL -> COMPLETED
                           -> AWAITING_TOOLS -> AWAITING_MODEL
                           -> FAILED

Each turn submits the current conversation, forwards text deltas to the
caller as they arrive and assembles tool calls from their fragments. On a
``tool_calls`` finish every call is dispatched to the executor and all
results are appended, matched by id, before the next submission. The loop is
bounded by ``InvokeConfig.max_iterations``.

Retries cover a submission up to its first streamed byte. Once a tool result
is part of the conversation only rate-limit rejections are retried, unless
the provider profile sets ``retry_after_tool_results``. Tools themselves are
never re-run by a retry.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any

from conduit.config import InvokeConfig
from conduit.errors import (
    ConduitError,
    ConfigurationError,
    ProtocolError,
    ToolExecutionFatalError,
    ToolLoopExceededError,
    ToolMismatchError,
    ValidationError,
    error_from_event,
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
from conduit.normalizer import StreamNormalizer, submit
from conduit.retry import retry_async, submission_retry_predicate
from conduit.tools import parse_arguments
from conduit.types import Message, ToolCallRequest, ToolCallResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from conduit.registry import Resolved
    from conduit.tools import ToolExecutor
    from conduit.types import GenerationRequest

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ConversationTurnLoop:
    """Mutable bookkeeping for one invocation; messages are append-only."""

    messages: tuple[Message, ...]
    remaining: int
    usage: Usage = field(default_factory=Usage)
    state: LoopState = LoopState.IDLE
    iterations: int = 0
    finish_reason: FinishReason | None = None
    tools_committed: bool = False

    def append(self, *messages: Message) -> None:
        self.messages = self.messages + messages


@dataclass
class _PendingCall:
    index: int
    name: str
    id: str
    fragments: list[str] = field(default_factory=list)


class ToolLoop:
    """Drives one conversation to a terminal state.

    Iterate :meth:`run` for the event stream. Failures raise a
    :class:`ConduitError` whose ``partial`` holds the conversation so far.
    """

    def __init__(
        self,
        resolved: Resolved,
        request: GenerationRequest,
        *,
        executor: ToolExecutor | None = None,
        config: InvokeConfig | None = None,
    ) -> None:
        self._resolved = resolved
        self._request = request
        self._executor = executor
        self._config = config or InvokeConfig()
        self.loop = ConversationTurnLoop(
            messages=request.messages, remaining=self._config.max_iterations
        )
        #: Network submissions made, retries included.
        self.attempts = 0
        self._malformed: dict[str, str] = {}

    @property
    def state(self) -> LoopState:
        return self.loop.state

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.loop.messages

    @property
    def usage(self) -> Usage:
        return self.loop.usage

    @property
    def final_message(self) -> Message | None:
        if self.loop.state is not LoopState.COMPLETED:
            return None
        return self.loop.messages[-1]

    async def run(self) -> AsyncIterator[StreamEvent]:
        """Yield the caller-facing event stream.

        Text and tool-call events are forwarded live, with tool-call indices
        numbered across the whole invocation. A single accumulated ``Usage``
        and the terminal ``Finish`` close the stream.
        """
        if self.loop.state is not LoopState.IDLE:
            raise RuntimeError("ToolLoop.run() may only be iterated once")
        offset = 0
        try:
            while True:
                self.loop.remaining -= 1
                self.loop.iterations += 1
                self.loop.state = LoopState.AWAITING_MODEL

                stream = await self._submit()
                text: list[str] = []
                calls: dict[int, _PendingCall] = {}
                turn_usage: Usage | None = None
                finish: Finish | None = None
                error: ErrorEvent | None = None
                async with stream:
                    async for event in stream:
                        if isinstance(event, TextDelta):
                            text.append(event.text)
                            yield event
                        elif isinstance(event, ToolCallStart):
                            call_id = event.id or (
                                f"call_{self.loop.iterations}_{event.index}"
                            )
                            calls[event.index] = _PendingCall(
                                offset + len(calls), event.name, call_id
                            )
                            pending = calls[event.index]
                            yield ToolCallStart(pending.index, event.name, call_id)
                        elif isinstance(event, ToolCallArgDelta):
                            calls[event.index].fragments.append(event.fragment)
                            yield ToolCallArgDelta(
                                calls[event.index].index, event.fragment
                            )
                        elif isinstance(event, ToolCallEnd):
                            yield ToolCallEnd(calls[event.index].index)
                        elif isinstance(event, Usage):
                            # Usage within one stream is a running total.
                            turn_usage = event
                        elif isinstance(event, ErrorEvent):
                            error = event
                        elif isinstance(event, Finish):
                            finish = event

                if turn_usage is not None:
                    self.loop.usage = self.loop.usage + turn_usage
                offset += len(calls)
                content = "".join(text)

                if error is not None or finish is None:
                    raise self._stream_error(error, content)

                duplicates = _duplicate_ids(calls.values())
                if duplicates:
                    raise ProtocolError(
                        "Tool call id(s) reused within one turn: "
                        + ", ".join(duplicates),
                        kind=ErrorKind.MALFORMED_STREAM,
                    )

                requests = [self._assemble(c) for c in calls.values()]
                if finish.reason is FinishReason.TOOL_CALLS or (
                    requests and finish.reason is FinishReason.STOP
                ):
                    if not requests:
                        raise ProtocolError(
                            "Model finished with tool_calls but sent no tool call",
                            kind=ErrorKind.MALFORMED_STREAM,
                        )
                    self.loop.append(Message.assistant(content, tool_calls=requests))
                    if self.loop.remaining <= 0:
                        raise ToolLoopExceededError(
                            f"No final answer after {self.loop.iterations} model turns",
                            hint="Raise InvokeConfig.max_iterations.",
                        )
                    self.loop.state = LoopState.AWAITING_TOOLS
                    results = await self._dispatch(requests)
                    self.loop.append(*(Message.tool(r) for r in results))
                    self.loop.tools_committed = True
                    continue

                if requests:
                    # The calls stay in the conversation but are never run.
                    self.loop.append(Message.assistant(content, tool_calls=requests))
                    raise self._cut_short(finish.reason, len(requests))

                self.loop.append(Message.assistant(content))
                self.loop.state = LoopState.COMPLETED
                self.loop.finish_reason = finish.reason
                yield self.loop.usage
                yield Finish(finish.reason, raw=finish.raw)
                return
        except ConduitError as e:
            self.loop.state = LoopState.FAILED
            if not e.partial:
                e.partial = self.loop.messages
            logger.debug(
                "Tool loop failed after %d turn(s): %s", self.loop.iterations, e
            )
            raise
        except BaseException:
            self.loop.state = LoopState.FAILED
            raise

    async def _submit(self) -> StreamNormalizer:
        request = replace(self._request, messages=self.loop.messages)
        profile = self._resolved.profile
        predicate = submission_retry_predicate(
            tools_committed=self.loop.tools_committed,
            allow_after_tools=profile.retry_after_tool_results,
        )

        async def attempt() -> StreamNormalizer:
            self.attempts += 1
            return await submit(
                self._resolved,
                request,
                timeout_s=self._config.timeout_s,
                connect_timeout_s=self._config.connect_timeout_s,
            )

        return await retry_async(
            attempt, policy=self._config.retry, should_retry=predicate
        )

    def _stream_error(self, error: ErrorEvent | None, content: str) -> ConduitError:
        if error is None:
            error = ErrorEvent(
                ErrorKind.STREAM_TRUNCATED, "Stream ended without a finish"
            )
        exc = error_from_event(error, provider=self._resolved.profile.id)
        exc.incomplete = True
        partial = self.loop.messages
        if content:
            partial = partial + (Message.assistant(content),)
        exc.partial = partial
        return exc

    @staticmethod
    def _cut_short(reason: FinishReason, pending: int) -> ProtocolError:
        if reason is FinishReason.LENGTH:
            return ProtocolError(
                f"Output limit reached with {pending} tool call(s) pending",
                kind=ErrorKind.STREAM_TRUNCATED,
                hint="Raise GenerationRequest.max_tokens.",
            )
        return ProtocolError(
            f"Model finished with {reason.value!r} while {pending} tool call(s) "
            "were pending",
            kind=ErrorKind.MALFORMED_STREAM,
        )

    def _assemble(self, call: _PendingCall) -> ToolCallRequest:
        raw = "".join(call.fragments)
        spec = self._request.tool(call.name)
        if spec is None:
            self._malformed[call.id] = f"Tool {call.name!r} is not declared"
            return ToolCallRequest(call.id, call.name, raw)
        try:
            arguments = parse_arguments(raw, spec)
        except ValidationError as e:
            self._malformed[call.id] = str(e)
            return ToolCallRequest(call.id, call.name, raw)
        return ToolCallRequest(call.id, call.name, arguments)

    async def _dispatch(
        self, requests: list[ToolCallRequest]
    ) -> list[ToolCallResult]:
        semaphore = asyncio.Semaphore(self._config.tool_concurrency)

        async def run_one(call: ToolCallRequest) -> ToolCallResult:
            async with semaphore:
                return await self._execute(call)

        tasks = [asyncio.create_task(run_one(c)) for c in requests]
        try:
            results = await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        by_id = {r.id: r for r in results}
        missing = [c.id for c in requests if c.id not in by_id]
        if missing:
            raise ToolMismatchError(f"No result for tool call(s): {', '.join(missing)}")
        return [by_id[c.id] for c in requests]

    async def _execute(self, call: ToolCallRequest) -> ToolCallResult:
        problem = self._malformed.get(call.id)
        if problem is not None:
            logger.debug("Rejecting malformed tool call %s: %s", call.id, problem)
            return ToolCallResult(call.id, problem, is_error=True, name=call.name)
        if self._executor is None:
            raise ConfigurationError(
                f"Model requested tool {call.name!r} but no executor was provided",
                hint="Pass executor=... (for example FunctionTools) to invoke().",
            )
        logger.debug("Dispatching tool %s (id=%s)", call.name, call.id)
        try:
            result: Any = await self._executor.execute(call.name, call.arguments)
        except ToolExecutionFatalError:
            raise
        except Exception as e:
            logger.debug("Tool %s (id=%s) failed: %s", call.name, call.id, e)
            message = f"{type(e).__name__}: {e}"
            return ToolCallResult(call.id, message, is_error=True, name=call.name)
        if not isinstance(result, ToolCallResult):
            raise ToolMismatchError(
                f"Executor returned {type(result).__name__} for tool call {call.id}"
            )
        if not result.id:
            return replace(result, id=call.id, name=result.name or call.name)
        if result.id != call.id:
            raise ToolMismatchError(
                f"Executor answered call {result.id!r} while {call.id!r} was pending"
            )
        return result


def _duplicate_ids(calls: Iterable[_PendingCall]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for call in calls:
        if call.id in seen:
            duplicates.append(call.id)
        seen.add(call.id)
    return duplicates
