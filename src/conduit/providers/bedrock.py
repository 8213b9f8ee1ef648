"""Anthropic models on AWS Bedrock.

Request bodies are Messages-API payloads without ``model``/``stream`` (the
model lives in the URL). Streaming responses use the AWS binary event-stream
framing; each ``chunk`` event carries a base64-encoded Anthropic stream event.
Requests are SigV4-signed by the registry-built authenticator.
"""

from __future__ import annotations

import base64
import json
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from conduit.events import ErrorEvent, ErrorKind, StreamEvent
from conduit.framing import iter_event_stream, parse_json_frame
from conduit.providers.anthropic import (
    AnthropicAdapter,
    MessageEventDecoder,
    decode_message,
)
from conduit.transport import WireRequest, describe_error_body

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from conduit.profiles import ProviderProfile
    from conduit.types import GenerationRequest

_BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"

_THROTTLING = {
    "throttlingException",
    "ThrottlingException",
    "serviceUnavailableException",
    "ServiceUnavailableException",
}


class BedrockAdapter(AnthropicAdapter):
    """``/model/{id}/invoke-with-response-stream`` for Anthropic models."""

    family = "bedrock"

    def encode(
        self,
        request: GenerationRequest,
        profile: ProviderProfile,
        *,
        model: str | None = None,
        stream: bool = True,
    ) -> WireRequest:
        wire_model = quote(model or request.model, safe="")
        action = "invoke-with-response-stream" if stream else "invoke"
        payload = {
            "anthropic_version": _BEDROCK_ANTHROPIC_VERSION,
            **self.build_payload(request),
        }
        headers = self._headers()
        if stream:
            headers["accept"] = "application/vnd.amazon.eventstream"
        return WireRequest(
            url=profile.url(f"/model/{{model}}/{action}", model=wire_model),
            payload=payload,
            headers=headers,
            stream=stream,
        )

    async def decode_stream(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[StreamEvent]:
        decoder = MessageEventDecoder()
        async for frame in iter_event_stream(chunks):
            if frame.message_type in ("exception", "error"):
                yield _exception_event(frame.event_type, frame.payload)
                return
            if frame.event_type != "chunk":
                continue
            envelope = parse_json_frame(frame.payload.decode("utf-8"))
            encoded = envelope.get("bytes") if isinstance(envelope, dict) else None
            if not isinstance(encoded, str):
                yield ErrorEvent(
                    ErrorKind.MALFORMED_STREAM, "Bedrock chunk without a bytes field"
                )
                return
            inner = parse_json_frame(base64.b64decode(encoded).decode("utf-8"))
            for event in decoder.feed(inner):
                yield event
            if decoder.done:
                return

    def decode_once(self, body: Any) -> list[StreamEvent]:
        return decode_message(body)

    def decode_error(self, status: int, body: bytes) -> tuple[str, ErrorKind | None]:
        kind: ErrorKind | None = None
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        if isinstance(data, dict):
            error_type = str(data.get("__type") or data.get("code") or "")
            if error_type.rsplit("#", 1)[-1] in _THROTTLING:
                kind = ErrorKind.RATE_LIMITED
        return describe_error_body(body), kind


def _exception_event(exception_type: str | None, payload: bytes) -> ErrorEvent:
    message = describe_error_body(payload) or exception_type or "Bedrock stream error"
    if exception_type in _THROTTLING:
        return ErrorEvent(ErrorKind.RATE_LIMITED, message)
    return ErrorEvent(ErrorKind.PROVIDER, f"{exception_type}: {message}")
