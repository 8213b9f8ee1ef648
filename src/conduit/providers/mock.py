"""Scripted in-process provider for tests and offline runs.

The mock speaks a tiny NDJSON protocol (one serialized canonical event per
line) through a real :class:`~conduit.transport.Transport` backed by
``httpx.MockTransport``, so retries, deadlines and stream normalization run
exactly as they do against a network provider.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import json
import logging
from typing import TYPE_CHECKING, Any, Union

import httpx

from conduit.events import (
    ErrorEvent,
    ErrorKind,
    Finish,
    FinishReason,
    StreamEvent,
    TextDelta,
    Usage,
    event_from_dict,
    event_to_dict,
)
from conduit.framing import iter_ndjson
from conduit.providers.base import BaseAdapter, arguments_json
from conduit.transport import Transport, WireRequest
from conduit.types import ToolCallRequest, ToolCallResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from conduit.auth import Authenticator
    from conduit.profiles import ProviderProfile
    from conduit.types import GenerationRequest, Message

logger = logging.getLogger(__name__)

#: One scripted submission: fixed events, a function of the wire payload, or
#: an HTTP error status answered instead of a turn.
Turn = Union[
    Sequence[StreamEvent], Callable[[dict[str, Any]], Sequence[StreamEvent]], int
]

_RATE_LIMIT_BODY = {"error": {"type": "rate_limit_error", "message": "rate limited"}}


class MockAdapter(BaseAdapter):
    """Replays scripted turns; echoes the last user message without a script.

    Args:
        profile: Profile to serve (any id, family ``mock``).
        script: Turns served in order. Once exhausted, the last turn repeats.
            An ``int`` entry answers that submission with the HTTP status, so
            ``[tool_turn, 429, final_turn]`` rejects the first resubmission.
        failures: HTTP statuses returned, in order, before any scripted turn
            (``[429, 429]`` simulates two rate-limit rejections).

    Every received payload is recorded in :attr:`requests`, failures included.
    A turn without ``Usage`` gets one computed from word counts.
    """

    family = "mock"

    def __init__(
        self,
        profile: ProviderProfile,
        auth: Authenticator | None = None,
        *,
        script: Iterable[Turn] | None = None,
        failures: Iterable[int] = (),
    ) -> None:
        super().__init__(profile, auth)
        self.script: list[Turn] = list(script or [])
        self.failures: list[int] = list(failures)
        self.requests: list[dict[str, Any]] = []
        self._served = 0
        self.transport = Transport(
            client=httpx.AsyncClient(transport=httpx.MockTransport(self._handle))
        )

    @property
    def attempts(self) -> int:
        return len(self.requests)

    def encode(
        self,
        request: GenerationRequest,
        profile: ProviderProfile,
        *,
        model: str | None = None,
        stream: bool = True,
    ) -> WireRequest:
        wire_model = model or request.model
        payload: dict[str, Any] = {
            "model": wire_model,
            "messages": [_encode_message(m) for m in request.messages],
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.tools:
            payload["tools"] = [t.name for t in request.tools]
        return WireRequest(
            url=profile.url("/v1/generate", model=wire_model),
            payload=payload,
            headers=self._headers(),
            stream=stream,
        )

    async def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]:
        async for line in iter_ndjson(chunks):
            yield _parse_event(line)

    def decode_once(self, body: Any) -> list[StreamEvent]:
        events = body.get("events") if isinstance(body, dict) else None
        if not isinstance(events, list):
            return [ErrorEvent(ErrorKind.MALFORMED_STREAM, "Mock body has no events")]
        return [_parse_event(item) for item in events]

    def next_turn(self, payload: dict[str, Any]) -> list[StreamEvent]:
        """Events for the next scripted turn (or an echo of the last user text)."""
        if self.script:
            turn = self.script[min(self._served, len(self.script) - 1)]
            self._served += 1
            events = list(turn(payload) if callable(turn) else turn)
        else:
            events = [
                TextDelta(f"echo: {_last_user_text(payload)}"),
                Finish(FinishReason.STOP),
            ]
        if not any(isinstance(e, Usage) for e in events):
            events = _with_usage(events, payload)
        return events

    def _scripted_status(self) -> int | None:
        if not self.script:
            return None
        entry = self.script[min(self._served, len(self.script) - 1)]
        if not isinstance(entry, int):
            return None
        self._served += 1
        return entry

    def _handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content or b"{}")
        self.requests.append(payload)
        status = self.failures.pop(0) if self.failures else self._scripted_status()
        if status is not None:
            logger.debug("Mock %s answering with status %d", self.profile.id, status)
            body = _RATE_LIMIT_BODY if status == 429 else {"error": {"message": "mock"}}
            return httpx.Response(status, json=body)

        events = self.next_turn(payload)
        if not payload.get("stream", True):
            body = {"events": [event_to_dict(e) for e in events]}
            return httpx.Response(200, json=body)
        lines = "".join(json.dumps(event_to_dict(e)) + "\n" for e in events)
        return httpx.Response(
            200,
            content=lines.encode("utf-8"),
            headers={"content-type": "application/x-ndjson"},
        )


def _parse_event(item: Any) -> StreamEvent:
    try:
        return event_from_dict(item)
    except (ValueError, AttributeError) as e:
        return ErrorEvent(ErrorKind.MALFORMED_STREAM, str(e))


def _word_count(text: str) -> int:
    return len(text.split())


def _last_user_text(payload: dict[str, Any]) -> str:
    for message in reversed(payload.get("messages") or []):
        if message.get("role") == "user":
            return str(message.get("content") or "")
    return ""


def _with_usage(
    events: list[StreamEvent], payload: dict[str, Any]
) -> list[StreamEvent]:
    prompt = sum(
        _word_count(str(m.get("content") or "")) for m in payload.get("messages") or []
    )
    completion = sum(_word_count(e.text) for e in events if isinstance(e, TextDelta))
    usage = Usage(prompt_tokens=prompt, completion_tokens=completion)
    finish_at = next(
        (i for i, e in enumerate(events) if isinstance(e, Finish)), len(events)
    )
    return [*events[:finish_at], usage, *events[finish_at:]]


def _encode_message(message: Message) -> dict[str, Any]:
    item: dict[str, Any] = {"role": message.role, "content": message.text}
    calls = [p for p in message.parts if isinstance(p, ToolCallRequest)]
    if calls:
        item["tool_calls"] = [
            {"id": c.id, "name": c.name, "arguments": arguments_json(c.arguments)}
            for c in calls
        ]
    results = [p for p in message.parts if isinstance(p, ToolCallResult)]
    if results:
        item["tool_results"] = [
            {"id": r.id, "content": r.content, "is_error": r.is_error} for r in results
        ]
    return item
