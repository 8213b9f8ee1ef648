"""Authenticators: attach credential material to an encoded request.

The registry builds one authenticator per (profile, credential) from the
profile's :class:`~conduit.profiles.AuthDescriptor`. Adapters call
``await auth.apply(wire)`` right before sending, so transport code never
knows how a provider authenticates.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from conduit.errors import ConfigurationError
from conduit.events import ErrorKind
from conduit.profiles import AuthDescriptor, AuthKind

if TYPE_CHECKING:
    from conduit.transport import WireRequest

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    async def apply(self, wire: WireRequest) -> WireRequest: ...


class NoAuth:
    """Local endpoints (Ollama, LM Studio, vLLM) need no credential."""

    async def apply(self, wire: WireRequest) -> WireRequest:
        return wire


class HeaderAuth:
    """Static key in a header: ``Authorization: Bearer ...``, ``x-api-key``..."""

    def __init__(self, header: str, value: str) -> None:
        self.header = header
        self._value = value

    async def apply(self, wire: WireRequest) -> WireRequest:
        return wire.with_headers({self.header: self._value})

    def __repr__(self) -> str:
        return f"HeaderAuth(header={self.header!r}, value=[REDACTED])"


class SigV4Auth:
    """AWS Signature Version 4 request signing (Bedrock)."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        *,
        region: str,
        service: str = "bedrock",
        session_token: str | None = None,
    ) -> None:
        from botocore.credentials import Credentials

        self.region = region
        self.service = service
        self._credentials = Credentials(access_key, secret_key, session_token)

    async def apply(self, wire: WireRequest) -> WireRequest:
        from botocore.auth import SigV4Auth as _BotoSigV4Auth
        from botocore.awsrequest import AWSRequest

        request = AWSRequest(
            method=wire.method,
            url=wire.url,
            data=wire.body(),
            headers={"content-type": "application/json", **wire.headers},
        )
        _BotoSigV4Auth(self._credentials, self.service, self.region).add_auth(request)
        return wire.with_headers(dict(request.headers.items()))

    def __repr__(self) -> str:
        return f"SigV4Auth(region={self.region!r}, service={self.service!r})"


class ServiceAccountAuth:
    """OAuth2 token exchange from a Google service-account key (Vertex AI).

    Tokens are cached and refreshed once they expire; concurrent callers share
    a single refresh.
    """

    def __init__(self, info: dict[str, Any], *, scopes: tuple[str, ...]) -> None:
        from google.oauth2 import service_account

        self._credentials = service_account.Credentials.from_service_account_info(
            info, scopes=list(scopes)
        )
        self._lock = asyncio.Lock()

    async def _token(self) -> str:
        async with self._lock:
            if not self._credentials.valid:
                from google.auth.transport.requests import Request

                logger.debug("Refreshing service-account access token")
                await asyncio.to_thread(self._credentials.refresh, Request())
            return str(self._credentials.token)

    async def apply(self, wire: WireRequest) -> WireRequest:
        token = await self._token()
        return wire.with_headers({"Authorization": f"Bearer {token}"})

    def __repr__(self) -> str:
        return "ServiceAccountAuth(token=[REDACTED])"


def _missing_credential(provider: str, env_var: str | None) -> ConfigurationError:
    where = f"set {env_var}, " if env_var else ""
    return ConfigurationError(
        f"No credential available for provider {provider!r}",
        kind=ErrorKind.BAD_CREDENTIAL,
        hint=f"Pass api_key=..., {where}or add api_key to the config file.",
    )


def _parse_aws_secret(provider: str, secret: str) -> tuple[str, str, str | None]:
    parts = secret.split(":")
    if len(parts) not in (2, 3) or not all(parts[:2]):
        raise ConfigurationError(
            f"Malformed signing credential for provider {provider!r}",
            kind=ErrorKind.BAD_CREDENTIAL,
            hint="Expected 'ACCESS_KEY_ID:SECRET_ACCESS_KEY[:SESSION_TOKEN]'.",
        )
    token = parts[2] if len(parts) == 3 and parts[2] else None
    return parts[0], parts[1], token


def _load_service_account(provider: str, secret: str) -> dict[str, Any]:
    """Accept inline JSON or a path to a key file."""
    raw = secret.strip()
    if not raw.startswith("{"):
        path = Path(raw).expanduser()
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read service-account file for provider {provider!r}: {e}",
                kind=ErrorKind.BAD_CREDENTIAL,
            ) from e
    try:
        info = json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Service-account credential for {provider!r} is not valid JSON",
            kind=ErrorKind.BAD_CREDENTIAL,
        ) from e
    if not isinstance(info, dict) or info.get("type") != "service_account":
        raise ConfigurationError(
            f"Credential for {provider!r} is not a service-account key",
            kind=ErrorKind.BAD_CREDENTIAL,
            hint="Download a JSON key for a service account from the cloud console.",
        )
    return info


def build_authenticator(
    descriptor: AuthDescriptor,
    secret: str | None,
    *,
    provider: str,
    env_var: str | None = None,
) -> Authenticator:
    """Build the authenticator a profile's descriptor asks for."""
    if descriptor.kind is AuthKind.NONE:
        return NoAuth()
    if not secret:
        raise _missing_credential(provider, env_var)

    if descriptor.kind in (AuthKind.BEARER, AuthKind.HEADER):
        return HeaderAuth(descriptor.header, f"{descriptor.prefix}{secret}")
    if descriptor.kind is AuthKind.SIGNED:
        if not descriptor.region:
            raise ConfigurationError(
                f"Provider {provider!r} uses signed requests but has no region",
                hint="Set region for the provider in the config file.",
            )
        access_key, secret_key, token = _parse_aws_secret(provider, secret)
        return SigV4Auth(
            access_key,
            secret_key,
            region=descriptor.region,
            service=descriptor.service,
            session_token=token,
        )
    if descriptor.kind is AuthKind.SERVICE_ACCOUNT:
        info = _load_service_account(provider, secret)
        return ServiceAccountAuth(info, scopes=descriptor.scopes)
    raise ConfigurationError(f"Unsupported auth kind: {descriptor.kind!r}")
