"""Authenticators built from profile descriptors."""

from __future__ import annotations

import pytest

from conduit.auth import HeaderAuth, NoAuth, SigV4Auth, build_authenticator
from conduit.errors import ConfigurationError
from conduit.events import ErrorKind
from conduit.profiles import AuthDescriptor, AuthKind
from conduit.transport import WireRequest

pytestmark = pytest.mark.unit

_WIRE = WireRequest(
    url="https://bedrock-runtime.us-east-1.amazonaws.com/model/m/converse-stream",
    payload={"messages": []},
)


@pytest.mark.asyncio
async def test_bearer_auth_sets_authorization_header() -> None:
    auth = build_authenticator(AuthDescriptor(), "sk-test", provider="openai")
    wire = await auth.apply(_WIRE)
    assert wire.headers["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_header_auth_uses_custom_header_without_prefix() -> None:
    descriptor = AuthDescriptor(kind=AuthKind.HEADER, header="x-api-key", prefix="")
    auth = build_authenticator(descriptor, "k", provider="anthropic")
    wire = await auth.apply(_WIRE)
    assert wire.headers == {"x-api-key": "k"}


def test_header_auth_repr_never_shows_the_secret() -> None:
    auth = HeaderAuth("Authorization", "Bearer sk-secret")
    assert "sk-secret" not in repr(auth)
    assert "REDACTED" in repr(auth)


@pytest.mark.asyncio
async def test_no_auth_leaves_request_untouched() -> None:
    auth = build_authenticator(
        AuthDescriptor(kind=AuthKind.NONE), None, provider="ollama"
    )
    assert isinstance(auth, NoAuth)
    assert await auth.apply(_WIRE) is _WIRE


def test_missing_credential_names_the_environment_variable() -> None:
    with pytest.raises(ConfigurationError) as exc:
        build_authenticator(
            AuthDescriptor(), None, provider="openai", env_var="OPENAI_API_KEY"
        )
    assert exc.value.kind is ErrorKind.BAD_CREDENTIAL
    assert "OPENAI_API_KEY" in (exc.value.hint or "")


# =============================================================================
# Signed requests
# =============================================================================

_SIGNED = AuthDescriptor(kind=AuthKind.SIGNED, region="us-east-1")


@pytest.mark.asyncio
async def test_sigv4_signs_the_request() -> None:
    auth = build_authenticator(_SIGNED, "AKIDEXAMPLE:secret", provider="bedrock")
    assert isinstance(auth, SigV4Auth)

    wire = await auth.apply(_WIRE)
    headers = {k.lower(): v for k, v in wire.headers.items()}
    assert headers["authorization"].startswith("AWS4-HMAC-SHA256")
    assert "AKIDEXAMPLE" in headers["authorization"]
    assert "x-amz-date" in headers
    assert "x-amz-security-token" not in headers


@pytest.mark.asyncio
async def test_sigv4_forwards_session_token() -> None:
    auth = build_authenticator(_SIGNED, "AKID:secret:tok", provider="bedrock")
    wire = await auth.apply(_WIRE)
    headers = {k.lower(): v for k, v in wire.headers.items()}
    assert headers["x-amz-security-token"] == "tok"


@pytest.mark.parametrize("secret", ["only-one-part", ":secret", "a:b:c:d"])
def test_malformed_signing_secret_is_rejected(secret: str) -> None:
    with pytest.raises(ConfigurationError) as exc:
        build_authenticator(_SIGNED, secret, provider="bedrock")
    assert exc.value.kind is ErrorKind.BAD_CREDENTIAL


def test_signed_auth_without_region_is_a_config_error() -> None:
    with pytest.raises(ConfigurationError, match="no region"):
        build_authenticator(
            AuthDescriptor(kind=AuthKind.SIGNED), "a:b", provider="bedrock"
        )


# =============================================================================
# Service accounts
# =============================================================================

_SA = AuthDescriptor(kind=AuthKind.SERVICE_ACCOUNT)


@pytest.mark.parametrize(
    ("secret", "fragment"),
    [
        ("{not json", "not valid JSON"),
        ('{"type": "authorized_user"}', "not a service-account key"),
    ],
)
def test_service_account_secret_is_validated(secret: str, fragment: str) -> None:
    with pytest.raises(ConfigurationError, match=fragment):
        build_authenticator(_SA, secret, provider="vertexai")


def test_service_account_path_must_exist(tmp_path) -> None:
    missing = tmp_path / "key.json"
    with pytest.raises(ConfigurationError, match="Cannot read service-account file"):
        build_authenticator(_SA, str(missing), provider="vertexai")
