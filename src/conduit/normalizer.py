"""Stream normalization: one submission, ordered canonical events.

``StreamNormalizer`` wraps the raw event iterator an adapter produces and
enforces the event contract regardless of what the wire delivered:

- tool-call events for an index follow Start, Delta*, End;
- ``Finish`` is emitted exactly once, last; a trailing ``Usage`` that the
  wire sends after its finish marker is delivered before ``Finish``;
- wire errors (in-band error payloads, malformed frames, dropped
  connections) become ``ErrorEvent`` followed by ``Finish(error)``;
- a stream that ends without a finish marker is ``STREAM_TRUNCATED``.

Framing differences never leak past this point.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
import logging
from typing import TYPE_CHECKING, Any

from conduit.errors import ConduitError, event_from_error
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

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    import httpx

    from conduit.registry import Resolved
    from conduit.types import GenerationRequest

logger = logging.getLogger(__name__)


class StreamNormalizer:
    """Async iterator of validated events for one model submission.

    Consumption is cooperative: each ``__anext__`` may suspend until more
    bytes arrive. ``aclose()`` releases the connection immediately and no
    further events are delivered.
    """

    def __init__(
        self,
        events: AsyncIterator[StreamEvent],
        *,
        provider: str | None = None,
        response: httpx.Response | None = None,
    ) -> None:
        self.provider = provider
        self._source = events
        self._response = response
        self._open: set[int] = set()
        self._closed: set[int] = set()
        self._finish: Finish | None = None
        self._failed = False
        self._stopped = False
        self._gen = self._run()

    def __aiter__(self) -> StreamNormalizer:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._stopped:
            raise StopAsyncIteration
        return await self._gen.__anext__()

    async def __aenter__(self) -> StreamNormalizer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the stream and release the underlying connection."""
        self._stopped = True
        await self._gen.aclose()
        await self._release()

    async def _release(self) -> None:
        source, self._source = self._source, None
        source_close = getattr(source, "aclose", None)
        if source_close is not None:
            with suppress(Exception):
                await source_close()
        response, self._response = self._response, None
        if response is not None:
            try:
                await response.aclose()
            except Exception as e:
                logger.warning("Failed to close %s response: %s", self.provider, e)

    async def _run(self) -> AsyncIterator[StreamEvent]:
        try:
            tail: list[StreamEvent] = []
            try:
                async for event in self._source:
                    accepted = self._accept(event)
                    if self._failed:
                        tail = accepted
                        break
                    for out in accepted:
                        yield out
                else:
                    tail = self._end_of_stream()
            except ConduitError as e:
                tail = self._fail(event_from_error(e))
            # Terminal events go out only after the connection is released.
            await self._release()
            for out in tail:
                yield out
        finally:
            await self._release()

    def _end_of_stream(self) -> list[StreamEvent]:
        if self._finish is None:
            return self._fail(
                ErrorEvent(
                    ErrorKind.STREAM_TRUNCATED,
                    f"{self.provider or 'provider'} stream ended "
                    "before a finish reason",
                )
            )
        return [*self._close_open_calls(), self._finish]

    def _accept(self, event: StreamEvent) -> list[StreamEvent]:
        if isinstance(event, ErrorEvent):
            return self._fail(event)
        if isinstance(event, Usage):
            return [event]
        if isinstance(event, Finish):
            if self._finish is not None:
                return self._malformed("Second finish reason in one stream")
            if event.reason is FinishReason.ERROR:
                return self._fail(
                    ErrorEvent(
                        ErrorKind.PROVIDER,
                        f"Provider reported an error finish ({event.raw})",
                    )
                )
            # Held back so trailing usage can still precede it.
            self._finish = event
            return self._close_open_calls()
        if self._finish is not None:
            return self._malformed(f"{type(event).__name__} after the finish reason")
        if isinstance(event, TextDelta):
            return [event] if event.text else []
        if isinstance(event, ToolCallStart):
            if event.index in self._open or event.index in self._closed:
                return self._malformed(f"Tool call {event.index} started twice")
            self._open.add(event.index)
            return [event]
        if isinstance(event, ToolCallArgDelta):
            if event.index not in self._open:
                return self._malformed(
                    f"Argument fragment for tool call {event.index} outside start/end"
                )
            return [event]
        if isinstance(event, ToolCallEnd):
            if event.index not in self._open:
                return self._malformed(
                    f"End for tool call {event.index} that is not open"
                )
            self._open.discard(event.index)
            self._closed.add(event.index)
            return [event]
        return self._malformed(f"Unknown event {event!r}")

    def _close_open_calls(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for index in sorted(self._open):
            events.append(ToolCallEnd(index))
            self._closed.add(index)
        self._open.clear()
        return events

    def _malformed(self, message: str) -> list[StreamEvent]:
        return self._fail(ErrorEvent(ErrorKind.MALFORMED_STREAM, message))

    def _fail(self, error: ErrorEvent) -> list[StreamEvent]:
        logger.debug(
            "%s stream failed: %s (%s)", self.provider, error.message, error.kind.value
        )
        self._failed = True
        return [*self._close_open_calls(), error, Finish(FinishReason.ERROR)]


async def _replay(events: Iterable[StreamEvent]) -> AsyncIterator[StreamEvent]:
    for event in events:
        yield event


async def submit(
    resolved: Resolved,
    request: GenerationRequest,
    *,
    timeout_s: float | None = None,
    connect_timeout_s: float | None = None,
) -> StreamNormalizer:
    """Encode, authorize and send *request*; return its normalized stream.

    Errors before the first byte of the body (connect failures, HTTP error
    statuses) are raised from here with retry metadata; everything after is
    delivered in-band by the returned normalizer.
    """
    adapter = resolved.adapter
    profile = resolved.profile
    wire = adapter.encode(
        request, profile, model=resolved.model, stream=profile.streaming
    )
    wire = await adapter.authorize(wire)
    transport = resolved.transport

    if not profile.streaming:
        body: Any = await transport.fetch_json(
            wire,
            provider=profile.id,
            timeout_s=timeout_s,
            connect_timeout_s=connect_timeout_s,
            decode_error=adapter.decode_error,
        )
        return StreamNormalizer(
            _replay(adapter.decode_once(body)), provider=profile.id
        )

    deadline = timeout_s or transport.timeout_s
    expires_at = asyncio.get_running_loop().time() + deadline
    response = await transport.open(
        wire,
        provider=profile.id,
        timeout_s=timeout_s,
        connect_timeout_s=connect_timeout_s,
        decode_error=adapter.decode_error,
    )
    chunks = transport.iter_bytes(
        response, provider=profile.id, expires_at=expires_at
    )
    return StreamNormalizer(
        adapter.decode_stream(chunks), provider=profile.id, response=response
    )
