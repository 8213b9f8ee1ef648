"""HTTP transport: shared connection pool, deadlines and error mapping.

Adapters produce :class:`WireRequest` values; the transport sends them and
maps every failure onto the conduit error taxonomy with retry metadata:

- connect/headers phase: timeouts and resets are retryable;
- HTTP status: 429 and 408/5xx are retryable, 401/403 are credential errors;
- body phase: bytes were already consumed, so nothing is retryable and a
  dropped connection is a truncated stream.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from conduit._http import AUTH_STATUS_CODES, RETRYABLE_STATUS_CODES, parse_retry_after
from conduit.errors import (
    APIError,
    ConduitError,
    ConfigurationError,
    ConnectionLostError,
    ProtocolError,
    RateLimitError,
    RequestTimeoutError,
)
from conduit.events import ErrorKind

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    ErrorDecoder = Callable[[int, bytes], tuple[str, ErrorKind | None]]

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY_CHARS = 500


@dataclass(frozen=True)
class WireRequest:
    """An encoded provider request; ``payload`` is serialized deterministically."""

    url: str
    payload: Mapping[str, Any] | None
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "POST"
    stream: bool = True

    def body(self) -> bytes:
        if self.payload is None:
            return b""
        return json.dumps(
            self.payload, ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")

    def with_headers(self, extra: Mapping[str, str]) -> WireRequest:
        return replace(self, headers={**self.headers, **extra})


def describe_error_body(body: bytes) -> str:
    """Extract a human-readable message from a provider error body."""
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text[:_MAX_ERROR_BODY_CHARS]
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, str):
            return err
        if isinstance(err, dict):
            for key in ("message", "Message", "detail"):
                value = err.get(key)
                if isinstance(value, str) and value:
                    return value
        for key in ("message", "Message", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return text[:_MAX_ERROR_BODY_CHARS]


def error_for_status(
    status: int,
    headers: Any,
    body: bytes,
    *,
    provider: str,
    decode_error: ErrorDecoder | None = None,
) -> ConduitError:
    """Map a non-2xx response onto a conduit error with retry metadata."""
    if decode_error is not None:
        message, kind = decode_error(status, body)
    else:
        message, kind = describe_error_body(body), None

    if status in AUTH_STATUS_CODES:
        return ConfigurationError(
            f"{provider} rejected the credential (status={status}): {message}",
            kind=ErrorKind.BAD_CREDENTIAL,
            hint=(
                "Check the credential: explicit api_key, the provider's "
                "environment variable, or the config file."
            ),
        )

    retry_after = parse_retry_after(headers)
    retryable = status in RETRYABLE_STATUS_CODES or retry_after is not None
    err_cls: type[APIError] = APIError
    if status == 429 or kind is ErrorKind.RATE_LIMITED:
        err_cls = RateLimitError
        kind = None
    return err_cls(
        f"{provider} request failed (status={status}): {message}",
        kind=kind,
        retryable=retryable,
        status_code=status,
        retry_after_s=retry_after,
        provider=provider,
        phase="request",
    )


class Transport:
    """Shared HTTP connection pool, safe for concurrent use."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 60.0,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self.timeout_s = timeout_s
        self.connect_timeout_s = connect_timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily initialize and return the pooled client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s, connect=self.connect_timeout_s),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._client

    async def open(
        self,
        wire: WireRequest,
        *,
        provider: str,
        timeout_s: float | None = None,
        connect_timeout_s: float | None = None,
        decode_error: ErrorDecoder | None = None,
    ) -> httpx.Response:
        """Send *wire* and return the response with its body still unread."""
        client = self._get_client()
        deadline = timeout_s or self.timeout_s
        connect = connect_timeout_s or self.connect_timeout_s
        request = client.build_request(
            wire.method,
            wire.url,
            headers={"content-type": "application/json", **wire.headers},
            content=wire.body(),
            timeout=httpx.Timeout(deadline, connect=connect),
        )
        logger.debug(
            "%s %s provider=%s stream=%s", wire.method, wire.url, provider, wire.stream
        )
        try:
            async with asyncio.timeout(deadline):
                response = await client.send(request, stream=True)
        except asyncio.CancelledError:
            raise
        except (TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(
                f"{provider} request timed out after {deadline}s",
                retryable=True,
                provider=provider,
                phase="connect",
            ) from e
        except httpx.TransportError as e:
            raise ConnectionLostError(
                f"{provider} connection failed: {e}",
                retryable=True,
                provider=provider,
                phase="connect",
            ) from e

        if response.status_code >= 400:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            raise error_for_status(
                response.status_code,
                response.headers,
                body,
                provider=provider,
                decode_error=decode_error,
            )
        return response

    async def iter_bytes(
        self,
        response: httpx.Response,
        *,
        provider: str,
        expires_at: float | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield body chunks; closing the iterator releases the connection.

        httpx bounds each read on its own. *expires_at* (event-loop time)
        bounds the body as a whole, so a slowly dripping stream still ends.
        """
        chunks = response.aiter_bytes()
        try:
            while True:
                try:
                    async with asyncio.timeout_at(expires_at):
                        chunk = await anext(chunks)
                except StopAsyncIteration:
                    break
                if chunk:
                    yield chunk
        except (TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(
                f"{provider} stream read timed out",
                retryable=False,
                provider=provider,
                phase="stream",
            ) from e
        except httpx.TransportError as e:
            raise ProtocolError(
                f"{provider} connection dropped mid-stream: {e}",
                kind=ErrorKind.STREAM_TRUNCATED,
            ) from e
        finally:
            await response.aclose()

    async def fetch_json(
        self,
        wire: WireRequest,
        *,
        provider: str,
        timeout_s: float | None = None,
        connect_timeout_s: float | None = None,
        decode_error: ErrorDecoder | None = None,
    ) -> Any:
        """Send a non-streaming request and return its decoded JSON body."""
        deadline = timeout_s or self.timeout_s
        expires_at = asyncio.get_running_loop().time() + deadline
        response = await self.open(
            wire,
            provider=provider,
            timeout_s=timeout_s,
            connect_timeout_s=connect_timeout_s,
            decode_error=decode_error,
        )
        try:
            async with asyncio.timeout_at(expires_at):
                body = await response.aread()
        except (TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(
                f"{provider} response read timed out",
                retryable=False,
                provider=provider,
                phase="stream",
            ) from e
        except httpx.TransportError as e:
            raise ProtocolError(
                f"{provider} connection dropped mid-response: {e}",
                kind=ErrorKind.STREAM_TRUNCATED,
            ) from e
        finally:
            await response.aclose()
        try:
            return json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"{provider} returned a non-JSON body") from e

    async def aclose(self) -> None:
        """Close pooled connections."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.aclose()
