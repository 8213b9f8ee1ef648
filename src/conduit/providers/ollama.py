"""Ollama native ``/api/chat`` (newline-delimited JSON).

Each line is a partial ``message``; the final line has ``done: true`` and
carries token counts plus ``done_reason``. Tool calls arrive whole, with
arguments already decoded into an object.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from conduit.events import (
    ErrorEvent,
    ErrorKind,
    Finish,
    FinishReason,
    StreamEvent,
    TextDelta,
    Usage,
)
from conduit.framing import iter_ndjson
from conduit.providers.base import (
    BaseAdapter,
    ToolCallTracker,
    arguments_object,
    map_finish,
    split_data_uri,
)
from conduit.transport import WireRequest, describe_error_body
from conduit.types import ImagePart

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.profiles import ProviderProfile
    from conduit.types import GenerationRequest, Message

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
}


class OllamaAdapter(BaseAdapter):
    """Ollama ``/api/chat``."""

    family = "ollama"

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
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if request.stop:
            options["stop"] = list(request.stop)
        if options:
            payload["options"] = options
        if request.response_schema is not None:
            payload["format"] = dict(request.response_schema)
        elif request.response_format == "json":
            payload["format"] = "json"
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": dict(t.parameters),
                    },
                }
                for t in request.tools
            ]
        return WireRequest(
            url=profile.url("/api/chat", model=wire_model),
            payload=payload,
            headers=self._headers(),
            stream=stream,
        )

    async def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]:
        decoder = _ChatDecoder()
        async for line in iter_ndjson(chunks):
            for event in decoder.feed(line):
                yield event
            if decoder.done:
                return

    def decode_once(self, body: Any) -> list[StreamEvent]:
        decoder = _ChatDecoder()
        return decoder.feed(body)

    def decode_error(self, status: int, body: bytes) -> tuple[str, ErrorKind | None]:
        return describe_error_body(body), None


class _ChatDecoder:
    def __init__(self) -> None:
        self.tracker = ToolCallTracker()
        self.done = False
        self._next_index = 0

    def feed(self, line: Any) -> list[StreamEvent]:
        if not isinstance(line, dict):
            return []
        if "error" in line:
            self.done = True
            return [ErrorEvent(ErrorKind.PROVIDER, str(line["error"]))]

        events: list[StreamEvent] = []
        message = line.get("message") or {}
        content = message.get("content")
        if isinstance(content, str) and content:
            events.append(TextDelta(content))
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            index = self._next_index
            self._next_index += 1
            events.extend(
                self.tracker.complete(
                    index,
                    fn.get("name", ""),
                    call.get("id") or f"ollama_call_{index}",
                    fn.get("arguments") or {},
                )
            )
        if line.get("done"):
            self.done = True
            events.append(
                Usage(
                    int(line.get("prompt_eval_count") or 0),
                    int(line.get("eval_count") or 0),
                )
            )
            reason = line.get("done_reason") or "stop"
            if reason == "stop" and self.tracker.seen_any:
                events.append(Finish(FinishReason.TOOL_CALLS, raw=reason))
            else:
                events.extend(map_finish(reason, _FINISH_REASONS))
        return events


def _encode_message(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        result = message.tool_results[0] if message.tool_results else None
        item: dict[str, Any] = {
            "role": "tool",
            "content": result.content if result else message.text,
        }
        if result is not None and result.name:
            item["tool_name"] = result.name
        return item

    item = {"role": message.role, "content": message.text}
    images = [
        inline[1]
        for inline in (
            split_data_uri(p.url) for p in message.parts if isinstance(p, ImagePart)
        )
        if inline is not None
    ]
    if images:
        item["images"] = images
    calls = message.tool_calls
    if calls:
        item["tool_calls"] = [
            {"function": {"name": c.name, "arguments": arguments_object(c.arguments)}}
            for c in calls
        ]
    return item
