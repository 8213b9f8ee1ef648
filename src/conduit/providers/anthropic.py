"""Anthropic Messages API family.

Streaming uses named SSE events: ``message_start``, ``content_block_start``,
``content_block_delta``, ``content_block_stop``, ``message_delta`` and
``message_stop``. Tool arguments arrive as ``input_json_delta`` fragments
addressed by content-block index.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from conduit.events import (
    ErrorEvent,
    ErrorKind,
    FinishReason,
    StreamEvent,
    TextDelta,
    Usage,
)
from conduit.framing import iter_sse, parse_json_frame
from conduit.providers._utils import to_strict_schema
from conduit.providers.base import (
    BaseAdapter,
    ToolCallTracker,
    append_merged,
    arguments_object,
    map_finish,
    split_data_uri,
)
from conduit.transport import WireRequest, describe_error_body
from conduit.types import ImagePart, TextPart, ToolCallRequest, ToolCallResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.profiles import ProviderProfile
    from conduit.types import GenerationRequest, Message

_ANTHROPIC_MAX_TOKENS = 8192

_FINISH_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}

_RATE_LIMIT_ERRORS = {"rate_limit_error", "overloaded_error"}


class AnthropicAdapter(BaseAdapter):
    """Anthropic ``/v1/messages``."""

    family = "anthropic"

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        """Messages-API body shared with the Bedrock family."""
        payload: dict[str, Any] = {
            "max_tokens": request.max_tokens or _ANTHROPIC_MAX_TOKENS,
            "messages": _encode_messages(request.messages),
        }
        system = "\n\n".join(m.text for m in request.messages if m.role == "system")
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop:
            payload["stop_sequences"] = list(request.stop)
        if request.tools:
            payload["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": dict(t.parameters),
                }
                for t in request.tools
            ]
        if request.response_schema is not None:
            payload["output_config"] = {
                "format": {
                    "type": "json_schema",
                    "schema": to_strict_schema(dict(request.response_schema)),
                }
            }
        return payload

    def encode(
        self,
        request: GenerationRequest,
        profile: ProviderProfile,
        *,
        model: str | None = None,
        stream: bool = True,
    ) -> WireRequest:
        wire_model = model or request.model
        payload = {"model": wire_model, **self.build_payload(request), "stream": stream}
        return WireRequest(
            url=profile.url("/v1/messages", model=wire_model),
            payload=payload,
            headers=self._headers(),
            stream=stream,
        )

    async def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]:
        decoder = MessageEventDecoder()
        async for frame in iter_sse(chunks):
            for event in decoder.feed(parse_json_frame(frame.data)):
                yield event
            if decoder.done:
                return

    def decode_once(self, body: Any) -> list[StreamEvent]:
        return decode_message(body)

    def decode_error(self, status: int, body: bytes) -> tuple[str, ErrorKind | None]:
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        kind: ErrorKind | None = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            if data["error"].get("type") in _RATE_LIMIT_ERRORS:
                kind = ErrorKind.RATE_LIMITED
        return describe_error_body(body), kind


class MessageEventDecoder:
    """State machine over Messages-API stream events (parsed JSON objects)."""

    def __init__(self) -> None:
        self.tracker = ToolCallTracker()
        self.done = False
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._stop_reason: str | None = None

    def feed(self, event: Any) -> list[StreamEvent]:
        if not isinstance(event, dict):
            return []
        kind = event.get("type")
        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._prompt_tokens = int(usage.get("input_tokens") or 0)
            self._completion_tokens = int(usage.get("output_tokens") or 0)
            return []
        if kind == "content_block_start":
            index = int(event.get("index", 0))
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                return self.tracker.start(
                    index, block.get("name", ""), block.get("id", "")
                )
            if block.get("type") == "text" and block.get("text"):
                return [TextDelta(block["text"])]
            return []
        if kind == "content_block_delta":
            index = int(event.get("index", 0))
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                text = delta.get("text") or ""
                return [TextDelta(text)] if text else []
            if delta.get("type") == "input_json_delta":
                return self.tracker.delta(index, delta.get("partial_json") or "")
            return []
        if kind == "content_block_stop":
            return self.tracker.end(int(event.get("index", 0)))
        if kind == "message_delta":
            stop = (event.get("delta") or {}).get("stop_reason")
            if stop is not None:
                self._stop_reason = stop
            usage = event.get("usage") or {}
            if "output_tokens" in usage:
                self._completion_tokens = int(usage["output_tokens"] or 0)
            return []
        if kind == "message_stop":
            self.done = True
            return [
                *self.tracker.close_all(),
                Usage(self._prompt_tokens, self._completion_tokens),
                *map_finish(self._stop_reason or "end_turn", _FINISH_REASONS),
            ]
        if kind == "error":
            self.done = True
            return [error_event(event.get("error"))]
        # "ping" and future event types carry nothing canonical.
        return []


def error_event(error: Any) -> ErrorEvent:
    if isinstance(error, dict):
        kind = (
            ErrorKind.RATE_LIMITED
            if error.get("type") in _RATE_LIMIT_ERRORS
            else ErrorKind.PROVIDER
        )
        return ErrorEvent(kind, str(error.get("message") or error.get("type")))
    return ErrorEvent(ErrorKind.PROVIDER, str(error))


def decode_message(body: Any) -> list[StreamEvent]:
    """Events equivalent to a complete (non-streaming) Messages response."""
    if not isinstance(body, dict):
        return [ErrorEvent(ErrorKind.MALFORMED_STREAM, "Body is not an object")]
    if body.get("type") == "error":
        return [error_event(body.get("error"))]
    tracker = ToolCallTracker()
    events: list[StreamEvent] = []
    for index, block in enumerate(body.get("content") or []):
        if block.get("type") == "text" and block.get("text"):
            events.append(TextDelta(block["text"]))
        elif block.get("type") == "tool_use":
            events.extend(
                tracker.complete(
                    index,
                    block.get("name", ""),
                    block.get("id", ""),
                    block.get("input") or {},
                )
            )
    usage = body.get("usage") or {}
    events.append(
        Usage(int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0))
    )
    events.extend(map_finish(body.get("stop_reason") or "end_turn", _FINISH_REASONS))
    return events


def _encode_image(part: ImagePart) -> dict[str, Any]:
    inline = split_data_uri(part.url)
    if inline is not None:
        mime, data = inline
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": part.mime_type or mime,
                "data": data,
            },
        }
    return {"type": "image", "source": {"type": "url", "url": part.url}}


def _encode_tool_call(call: ToolCallRequest) -> dict[str, Any]:
    return {
        "type": "tool_use",
        "id": call.id,
        "name": call.name,
        "input": arguments_object(call.arguments),
    }


def _encode_tool_result(result: ToolCallResult) -> dict[str, Any]:
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": result.id,
        "content": result.content,
    }
    if result.is_error:
        block["is_error"] = True
    return block


def _encode_messages(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    encoded: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        blocks: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                blocks.append(_encode_image(part))
            elif isinstance(part, ToolCallRequest):
                blocks.append(_encode_tool_call(part))
            elif isinstance(part, ToolCallResult):
                blocks.append(_encode_tool_result(part))
        if not blocks:
            continue
        role = "assistant" if message.role == "assistant" else "user"
        append_merged(encoded, {"role": role, "content": blocks})
    return encoded
