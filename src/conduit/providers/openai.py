"""OpenAI Chat Completions family.

Serves OpenAI and every OpenAI-compatible endpoint in the catalog (Azure
OpenAI, DeepSeek, Groq, Mistral, ...). Streaming uses SSE ``data:`` frames
terminated by a ``[DONE]`` sentinel; usage arrives in a trailing chunk with
an empty ``choices`` list when ``stream_options.include_usage`` is set.
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
    arguments_json,
    map_finish,
)
from conduit.transport import WireRequest, describe_error_body
from conduit.types import ImagePart, TextPart, ToolCallRequest, ToolCallResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.profiles import ProviderProfile
    from conduit.types import GenerationRequest, Message

_DONE_SENTINEL = "[DONE]"

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}

_RATE_LIMIT_CODES = {"rate_limit_exceeded", "insufficient_quota"}


class OpenAIAdapter(BaseAdapter):
    """OpenAI-compatible ``/chat/completions``."""

    family = "openai"

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
            "messages": _encode_messages(request.messages),
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.stop:
            payload["stop"] = list(request.stop)
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
        if request.response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": "response",
                    "schema": to_strict_schema(dict(request.response_schema)),
                    "strict": True,
                },
            }
        elif request.response_format == "json":
            payload["response_format"] = {"type": "json_object"}

        return WireRequest(
            url=profile.url("/chat/completions", model=wire_model),
            payload=payload,
            headers=self._headers(),
            stream=stream,
        )

    async def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]:
        tracker = ToolCallTracker()
        async for frame in iter_sse(chunks):
            if frame.data.strip() == _DONE_SENTINEL:
                return
            chunk = parse_json_frame(frame.data)
            if not isinstance(chunk, dict):
                continue
            if "error" in chunk:
                yield _error_event(chunk["error"])
                return
            for event in _decode_chunk(chunk, tracker):
                yield event

    def decode_once(self, body: Any) -> list[StreamEvent]:
        if isinstance(body, dict) and "error" in body:
            return [_error_event(body["error"])]
        tracker = ToolCallTracker()
        events: list[StreamEvent] = []
        choices = (body.get("choices") if isinstance(body, dict) else None) or []
        finish: str | None = None
        if choices:
            choice = choices[0]
            message = choice.get("message") or {}
            content = message.get("content")
            if isinstance(content, str) and content:
                events.append(TextDelta(content))
            for i, call in enumerate(message.get("tool_calls") or []):
                fn = call.get("function") or {}
                events.extend(
                    tracker.complete(
                        i,
                        fn.get("name", ""),
                        call.get("id", ""),
                        fn.get("arguments") or "",
                    )
                )
            finish = choice.get("finish_reason")
        usage = body.get("usage") if isinstance(body, dict) else None
        if isinstance(usage, dict):
            events.append(_usage(usage))
        events.extend(map_finish(finish, _FINISH_REASONS))
        return events

    def decode_error(self, status: int, body: bytes) -> tuple[str, ErrorKind | None]:
        kind: ErrorKind | None = None
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            code = data["error"].get("code") or data["error"].get("type")
            if code in _RATE_LIMIT_CODES:
                kind = ErrorKind.RATE_LIMITED
        return describe_error_body(body), kind


def _decode_chunk(chunk: dict[str, Any], tracker: ToolCallTracker) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    for choice in chunk.get("choices") or []:
        if choice.get("index", 0) != 0:
            continue
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str) and content:
            events.append(TextDelta(content))
        for call in delta.get("tool_calls") or []:
            index = int(call.get("index", 0))
            fn = call.get("function") or {}
            if not tracker.is_open(index) and (call.get("id") or fn.get("name")):
                events.extend(
                    tracker.start(index, fn.get("name", ""), call.get("id", ""))
                )
            arguments = fn.get("arguments")
            if arguments:
                events.extend(tracker.delta(index, arguments))
        finish = choice.get("finish_reason")
        if finish is not None:
            events.extend(tracker.close_all())
            events.extend(map_finish(finish, _FINISH_REASONS))
    usage = chunk.get("usage")
    if isinstance(usage, dict):
        events.append(_usage(usage))
    return events


def _usage(usage: dict[str, Any]) -> Usage:
    return Usage(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
    )


def _error_event(error: Any) -> ErrorEvent:
    if isinstance(error, dict):
        code = error.get("code") or error.get("type")
        kind = (
            ErrorKind.RATE_LIMITED if code in _RATE_LIMIT_CODES else ErrorKind.PROVIDER
        )
        return ErrorEvent(kind, str(error.get("message") or code or "provider error"))
    return ErrorEvent(ErrorKind.PROVIDER, str(error))


def _encode_content(message: Message) -> str | list[dict[str, Any]]:
    parts = [p for p in message.parts if isinstance(p, (TextPart, ImagePart))]
    if all(isinstance(p, TextPart) for p in parts):
        return message.text
    content: list[dict[str, Any]] = []
    for p in parts:
        if isinstance(p, TextPart):
            content.append({"type": "text", "text": p.text})
        else:
            content.append({"type": "image_url", "image_url": {"url": p.url}})
    return content


def _encode_messages(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    encoded: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            for result in message.tool_results:
                encoded.append(_encode_tool_result(result))
            continue
        item: dict[str, Any] = {"role": message.role}
        if message.role == "assistant":
            item["content"] = message.text or None
            calls = message.tool_calls
            if calls:
                item["tool_calls"] = [_encode_tool_call(c) for c in calls]
        else:
            item["content"] = _encode_content(message)
        if message.name:
            item["name"] = message.name
        encoded.append(item)
    return encoded


def _encode_tool_call(call: ToolCallRequest) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": arguments_json(call.arguments)},
    }


def _encode_tool_result(result: ToolCallResult) -> dict[str, Any]:
    return {"role": "tool", "tool_call_id": result.id, "content": result.content}
