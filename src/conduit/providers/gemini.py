"""Gemini ``generateContent`` family (Gemini API and Vertex AI).

Streaming uses SSE ``data:`` frames (``?alt=sse``) with no terminating
sentinel: the stream simply ends after the chunk carrying ``finishReason``.
Function calls arrive whole, one part each, so the adapter emits
start/delta/end for each in one go.
"""

from __future__ import annotations

import json
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
from conduit.framing import iter_sse, parse_json_frame
from conduit.providers._utils import strip_schema_keys
from conduit.providers.base import (
    BaseAdapter,
    ToolCallTracker,
    append_merged,
    arguments_object,
    image_mime,
    map_finish,
    split_data_uri,
)
from conduit.transport import WireRequest, describe_error_body
from conduit.types import ImagePart, TextPart, ToolCallRequest, ToolCallResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.profiles import ProviderProfile
    from conduit.types import GenerationRequest, Message

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "IMAGE_SAFETY": FinishReason.CONTENT_FILTER,
}

# Schema keywords the Gemini OpenAPI-subset schema rejects.
_UNSUPPORTED_SCHEMA_KEYS = frozenset(
    {"additionalProperties", "$schema", "$id", "strict"}
)

# Ids we invent for calls the API left unnamed; never sent back on the wire.
_SYNTHETIC_ID_PREFIX = "gemini_call_"


class GeminiAdapter(BaseAdapter):
    """Gemini ``models/{model}:streamGenerateContent``."""

    family = "gemini"

    def encode(
        self,
        request: GenerationRequest,
        profile: ProviderProfile,
        *,
        model: str | None = None,
        stream: bool = True,
    ) -> WireRequest:
        wire_model = model or request.model
        payload: dict[str, Any] = {"contents": _encode_contents(request.messages)}
        system = "\n\n".join(m.text for m in request.messages if m.role == "system")
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        config: dict[str, Any] = {}
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.top_p is not None:
            config["topP"] = request.top_p
        if request.max_tokens is not None:
            config["maxOutputTokens"] = request.max_tokens
        if request.stop:
            config["stopSequences"] = list(request.stop)
        if request.wants_json:
            config["responseMimeType"] = "application/json"
        if request.response_schema is not None:
            config["responseSchema"] = strip_schema_keys(
                dict(request.response_schema), _UNSUPPORTED_SCHEMA_KEYS
            )
        if config:
            payload["generationConfig"] = config

        if request.tools:
            declarations = []
            for t in request.tools:
                declaration: dict[str, Any] = {
                    "name": t.name,
                    "description": t.description,
                }
                if t.parameters.get("properties"):
                    declaration["parameters"] = strip_schema_keys(
                        dict(t.parameters), _UNSUPPORTED_SCHEMA_KEYS
                    )
                declarations.append(declaration)
            payload["tools"] = [{"functionDeclarations": declarations}]

        path = (
            "/models/{model}:streamGenerateContent?alt=sse"
            if stream
            else "/models/{model}:generateContent"
        )
        return WireRequest(
            url=profile.url(path, model=wire_model),
            payload=payload,
            headers=self._headers(),
            stream=stream,
        )

    async def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]:
        decoder = _ResponseDecoder()
        async for frame in iter_sse(chunks):
            chunk = parse_json_frame(frame.data)
            events = decoder.feed(chunk)
            for event in events:
                yield event
            if decoder.failed:
                return
        for event in decoder.finish():
            yield event

    def decode_once(self, body: Any) -> list[StreamEvent]:
        decoder = _ResponseDecoder()
        events = decoder.feed(body)
        if decoder.failed:
            return events
        return [*events, *decoder.finish()]

    def decode_error(self, status: int, body: bytes) -> tuple[str, ErrorKind | None]:
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        if isinstance(data, list) and data:
            data = data[0]
        kind: ErrorKind | None = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            if data["error"].get("status") == "RESOURCE_EXHAUSTED":
                kind = ErrorKind.RATE_LIMITED
        return describe_error_body(body), kind


class _ResponseDecoder:
    """Accumulates ``GenerateContentResponse`` chunks.

    Usage snapshots are cumulative, so only the last one is reported, together
    with the finish reason, once the stream ends.
    """

    def __init__(self) -> None:
        self.tracker = ToolCallTracker()
        self.failed = False
        self._next_index = 0
        self._finish: str | None = None
        self._usage: Usage | None = None

    def feed(self, chunk: Any) -> list[StreamEvent]:
        if not isinstance(chunk, dict):
            return []
        if isinstance(chunk.get("error"), dict):
            self.failed = True
            error = chunk["error"]
            kind = (
                ErrorKind.RATE_LIMITED
                if error.get("status") == "RESOURCE_EXHAUSTED"
                else ErrorKind.PROVIDER
            )
            return [ErrorEvent(kind, str(error.get("message") or error.get("status")))]

        events: list[StreamEvent] = []
        metadata = chunk.get("usageMetadata")
        if isinstance(metadata, dict):
            self._usage = Usage(
                int(metadata.get("promptTokenCount") or 0),
                int(metadata.get("candidatesTokenCount") or 0),
            )
        feedback = chunk.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            self._finish = "SAFETY"

        candidates = chunk.get("candidates") or []
        if not candidates:
            return events
        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought"):
                continue
            if isinstance(part.get("text"), str) and part["text"]:
                events.append(TextDelta(part["text"]))
            call = part.get("functionCall")
            if isinstance(call, dict):
                index = self._next_index
                self._next_index += 1
                call_id = call.get("id") or f"{_SYNTHETIC_ID_PREFIX}{index}"
                events.extend(
                    self.tracker.complete(
                        index, call.get("name", ""), call_id, call.get("args") or {}
                    )
                )
        if candidate.get("finishReason"):
            self._finish = candidate["finishReason"]
        return events

    def finish(self) -> list[StreamEvent]:
        if self._finish is None:
            # No finish reason: let the normalizer report the truncation.
            return []
        events: list[StreamEvent] = []
        if self._usage is not None:
            events.append(self._usage)
        if self._finish == "STOP" and self.tracker.seen_any:
            events.append(Finish(FinishReason.TOOL_CALLS, raw="STOP"))
        else:
            events.extend(map_finish(self._finish, _FINISH_REASONS))
        return events


def _encode_part(part: Any, names: dict[str, str]) -> dict[str, Any] | None:
    if isinstance(part, TextPart):
        return {"text": part.text} if part.text else None
    if isinstance(part, ImagePart):
        inline = split_data_uri(part.url)
        if inline is not None:
            return {"inlineData": {"mimeType": image_mime(part), "data": inline[1]}}
        return {"fileData": {"mimeType": image_mime(part), "fileUri": part.url}}
    if isinstance(part, ToolCallRequest):
        names[part.id] = part.name
        call: dict[str, Any] = {
            "name": part.name,
            "args": arguments_object(part.arguments),
        }
        if part.id and not part.id.startswith(_SYNTHETIC_ID_PREFIX):
            call["id"] = part.id
        return {"functionCall": call}
    if isinstance(part, ToolCallResult):
        key = "error" if part.is_error else "content"
        response: dict[str, Any] = {
            "name": part.name or names.get(part.id, ""),
            "response": {key: part.content},
        }
        if part.id and not part.id.startswith(_SYNTHETIC_ID_PREFIX):
            response["id"] = part.id
        return {"functionResponse": response}
    return None


def _encode_contents(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    names: dict[str, str] = {}
    for message in messages:
        if message.role == "system":
            continue
        parts = [
            encoded
            for encoded in (_encode_part(p, names) for p in message.parts)
            if encoded is not None
        ]
        if not parts:
            continue
        role = "model" if message.role == "assistant" else "user"
        append_merged(contents, {"role": role, "parts": parts}, content_key="parts")
    return contents
