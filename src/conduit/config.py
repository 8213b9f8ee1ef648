"""Configuration: invocation settings, environment secrets and the config file.

Three independent pieces, composed by :class:`~conduit.registry.ProviderRegistry`:

- :class:`InvokeConfig`: frozen per-invocation knobs (iteration bound,
  retry policy, deadlines, tool concurrency);
- :class:`EnvCredentials`: secrets from the process environment (``.env``
  files are loaded once at import);
- :class:`FileConfig`: persisted provider settings and secrets from a TOML
  file, validated through a pydantic schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import os
from pathlib import Path
import tomllib
from typing import TYPE_CHECKING, Any, Literal, Protocol

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from conduit.errors import ConfigurationError
from conduit.profiles import AuthKind, ProviderProfile
from conduit.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping

load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONDUIT_"
CONFIG_PATH_VAR = "CONDUIT_CONFIG"


@dataclass(frozen=True)
class InvokeConfig:
    """Immutable settings for one invocation.

    Example:
        config = InvokeConfig(max_iterations=4, tool_concurrency=1)
    """

    #: Upper bound on model submissions in one tool loop.
    max_iterations: int = 8
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    #: Deadline for each network call, in seconds.
    timeout_s: float = 60.0
    connect_timeout_s: float = 10.0
    #: How many tool calls from one turn may execute at once.
    tool_concurrency: int = 4

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be >= 1, got {self.max_iterations}",
                hint="This bounds how many model turns a tool loop may take.",
            )
        if self.timeout_s <= 0 or self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "timeout_s and connect_timeout_s must be > 0",
                hint="Every network call carries a deadline.",
            )
        if self.tool_concurrency < 1:
            raise ConfigurationError(
                f"tool_concurrency must be >= 1, got {self.tool_concurrency}",
                hint="Use 1 to run tool calls sequentially.",
            )


def env_key_name(provider: str) -> str:
    """``CONDUIT_<PROVIDER>_API_KEY`` with the id upper-cased."""
    slug = "".join(c if c.isalnum() else "_" for c in provider).upper()
    return f"{ENV_PREFIX}{slug}_API_KEY"


class CredentialSource(Protocol):
    """Anything that can look up a provider secret."""

    def get_secret(self, provider: str, env_var: str | None = None) -> str | None:
        """Return the secret for *provider*, or None when not configured."""
        ...


class ProfileSource(Protocol):
    """Anything that can extend or override provider profiles."""

    def get_profile(
        self, provider: str, base: ProviderProfile | None = None
    ) -> ProviderProfile | None: ...


class EnvCredentials:
    """Secrets from environment variables.

    Lookup order for a provider: ``CONDUIT_<PROVIDER>_API_KEY``, then the
    provider's conventional variable (``OPENAI_API_KEY``...). Signed-request
    providers compose the standard ``AWS_*`` variables into
    ``ACCESS_KEY_ID:SECRET_ACCESS_KEY[:SESSION_TOKEN]``.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def _get(self, name: str) -> str | None:
        environ = os.environ if self._environ is None else self._environ
        value = environ.get(name)
        if value is None:
            return None
        return value.strip() or None

    def get_secret(self, provider: str, env_var: str | None = None) -> str | None:
        secret = self._get(env_key_name(provider))
        if secret is None and env_var:
            secret = self._get(env_var)
        return secret

    def get_signing_secret(self, provider: str) -> str | None:
        explicit = self._get(env_key_name(provider))
        if explicit is not None:
            return explicit
        access_key = self._get("AWS_ACCESS_KEY_ID")
        secret_key = self._get("AWS_SECRET_ACCESS_KEY")
        if not access_key or not secret_key:
            return None
        token = self._get("AWS_SESSION_TOKEN")
        secret = f"{access_key}:{secret_key}"
        return f"{secret}:{token}" if token else secret


# --- Schema (pydantic wall) ---


class ProviderSettings(BaseModel):
    """One ``[providers.<id>]`` table of the config file.

    Tables for built-in providers override individual fields; tables for new
    ids must name a ``family`` and an ``endpoint``.
    """

    model_config = ConfigDict(extra="forbid")

    family: str | None = None
    endpoint: str | None = None
    api_key: SecretStr | None = None
    api_key_env: str | None = None
    auth: Literal["bearer", "header", "signed", "service_account", "none"] | None = None
    auth_header: str | None = None
    auth_prefix: str | None = None
    region: str | None = None
    models: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    path: str | None = None
    streaming: bool | None = None
    retry_after_tool_results: bool | None = None

    @field_validator("api_key", mode="before")
    @classmethod
    def normalize_api_key(cls, v: Any) -> Any:
        """Trim whitespace and map empty keys to None."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if isinstance(v, str):
            v = v.strip()
            return SecretStr(v) if v else None
        return v

    @field_validator("endpoint", mode="before")
    @classmethod
    def normalize_endpoint(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v


class FileSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    providers: dict[str, ProviderSettings] = Field(default_factory=dict)


def default_config_path() -> Path:
    """``$CONDUIT_CONFIG``, else ``~/.config/conduit/conduit.toml``."""
    override = os.environ.get(CONFIG_PATH_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "conduit" / "conduit.toml"


class FileConfig:
    """Persisted provider configuration backed by a TOML file.

    The file is read lazily on first use; :meth:`reload` drops the cached
    copy. A missing file is an empty configuration; an unreadable or invalid
    one is a :class:`ConfigurationError`.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = (
            Path(path).expanduser() if path is not None else default_config_path()
        )
        self._settings: FileSettings | None = None

    def _load(self) -> FileSettings:
        if self._settings is not None:
            return self._settings
        if not self.path.exists():
            self._settings = FileSettings()
            return self._settings
        try:
            with self.path.open("rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(
                f"Cannot read config file {self.path}: {e}",
                hint="Fix the TOML syntax or point CONDUIT_CONFIG elsewhere.",
            ) from e
        try:
            self._settings = FileSettings.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid config file {self.path}: {e.error_count()} error(s)",
                hint=str(e),
            ) from e
        logger.debug(
            "Loaded %d provider table(s) from %s",
            len(self._settings.providers),
            self.path,
        )
        return self._settings

    def reload(self) -> None:
        self._settings = None

    def provider_ids(self) -> list[str]:
        return sorted(self._load().providers)

    def get_secret(self, provider: str, env_var: str | None = None) -> str | None:
        del env_var
        settings = self._load().providers.get(provider)
        if settings is None or settings.api_key is None:
            return None
        return settings.api_key.get_secret_value()

    def get_profile(
        self, provider: str, base: ProviderProfile | None = None
    ) -> ProviderProfile | None:
        """Return *base* with file overrides applied, or a file-defined profile."""
        settings = self._load().providers.get(provider)
        if settings is None:
            return base
        if base is None:
            if not settings.family or not settings.endpoint:
                raise ConfigurationError(
                    f"Provider {provider!r} in {self.path} needs family and endpoint",
                    hint="Only built-in providers may be configured partially.",
                )
            base = ProviderProfile(id=provider, family=settings.family, endpoint="")
        return _apply_settings(base, settings)


def _apply_settings(base: ProviderProfile, s: ProviderSettings) -> ProviderProfile:
    auth = base.auth
    if s.auth is not None:
        auth = replace(auth, kind=AuthKind(s.auth))
    if s.auth_header is not None:
        auth = replace(auth, header=s.auth_header)
    if s.auth_prefix is not None:
        auth = replace(auth, prefix=s.auth_prefix)
    if s.region is not None:
        auth = replace(auth, region=s.region)
    if s.auth == "header" and s.auth_prefix is None:
        auth = replace(auth, prefix="")

    updates: dict[str, Any] = {"auth": auth}
    if s.family is not None:
        updates["family"] = s.family
    if s.endpoint is not None:
        updates["endpoint"] = s.endpoint
    if s.region is not None and base.family == "bedrock" and s.endpoint is None:
        updates["endpoint"] = f"https://bedrock-runtime.{s.region}.amazonaws.com"
    if s.models:
        updates["models"] = {**base.models, **s.models}
    if s.headers:
        updates["headers"] = {**base.headers, **s.headers}
    if s.path is not None:
        updates["path"] = s.path
    if s.streaming is not None:
        updates["streaming"] = s.streaming
    if s.retry_after_tool_results is not None:
        updates["retry_after_tool_results"] = s.retry_after_tool_results
    if s.api_key_env is not None:
        updates["api_key_env"] = s.api_key_env
    return replace(base, **updates)


__all__ = [
    "EnvCredentials",
    "FileConfig",
    "InvokeConfig",
    "ProviderSettings",
    "default_config_path",
    "env_key_name",
]
