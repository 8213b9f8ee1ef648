"""Provider registry: (provider, model) -> ready-to-use adapter.

The registry is an explicitly constructed, read-mostly object shared by
concurrent invocations. It composes three sources:

- profiles: the built-in catalog, extended or overridden by the config file;
- credentials: explicit per-call key, then environment, then config file;
- adapters: one instance per (provider, credential), constructed at most
  once even when many callers resolve the same provider concurrently.

Its lifecycle is explicit: :meth:`reload` re-reads the config file and drops
cached adapters, :meth:`aclose` releases pooled connections.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
from typing import TYPE_CHECKING

from conduit._singleflight import SingleFlight
from conduit.auth import build_authenticator
from conduit.config import EnvCredentials, FileConfig
from conduit.errors import ConfigurationError
from conduit.events import ErrorKind
from conduit.profiles import BUILTIN_PROFILES, AuthKind, ProviderProfile
from conduit.providers import ADAPTER_FAMILIES
from conduit.transport import Transport

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from conduit.providers.base import BaseAdapter, ProviderAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolved:
    """Everything one submission needs: adapter, profile, wire model, transport."""

    adapter: ProviderAdapter
    profile: ProviderProfile
    model: str
    transport: Transport


def _fingerprint(secret: str | None) -> str:
    if not secret:
        return ""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


class ProviderRegistry:
    """Resolves providers to adapters; safe for concurrent use.

    Example:
        registry = ProviderRegistry()
        resolved = await registry.resolve("openai", "gpt-4o-mini")
    """

    def __init__(
        self,
        profiles: Iterable[ProviderProfile] | None = None,
        *,
        env: EnvCredentials | None = None,
        config: FileConfig | None = None,
        transport: Transport | None = None,
        families: Mapping[str, type[BaseAdapter]] | None = None,
    ) -> None:
        self._profiles: dict[str, ProviderProfile] = {
            p.id: p for p in (BUILTIN_PROFILES if profiles is None else profiles)
        }
        self._env = env or EnvCredentials()
        self._config = config if config is not None else FileConfig()
        self._transport = transport or Transport()
        self._families = dict(families or ADAPTER_FAMILIES)
        self._pinned: dict[str, ProviderAdapter] = {}
        self._adapters: SingleFlight[tuple[str, str], ProviderAdapter] = SingleFlight()

    async def __aenter__(self) -> ProviderRegistry:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def transport(self) -> Transport:
        return self._transport

    def register(
        self, profile: ProviderProfile, adapter: ProviderAdapter | None = None
    ) -> None:
        """Add or replace a profile; *adapter* pins a pre-built instance to it."""
        self._profiles[profile.id] = profile
        if adapter is not None:
            self._pinned[profile.id] = adapter
        else:
            self._pinned.pop(profile.id, None)
        self._adapters.clear()

    def providers(self) -> list[str]:
        return sorted(set(self._profiles) | set(self._config.provider_ids()))

    def profile(self, provider: str) -> ProviderProfile:
        """Return the effective profile for *provider* (catalog plus file overrides)."""
        base = self._profiles.get(provider)
        profile = self._config.get_profile(provider, base)
        if profile is None:
            known = ", ".join(self.providers())
            raise ConfigurationError(
                f"Unknown provider: {provider!r}",
                kind=ErrorKind.UNKNOWN_PROVIDER,
                hint=f"Known providers: {known}.",
            )
        return profile

    def credential(
        self, profile: ProviderProfile, api_key: str | None = None
    ) -> str | None:
        """Credential for *profile*: explicit key, then environment, then file."""
        if profile.auth.kind is AuthKind.NONE:
            return None
        if api_key:
            return api_key
        if profile.auth.kind is AuthKind.SIGNED:
            secret = self._env.get_signing_secret(profile.id)
        else:
            secret = self._env.get_secret(profile.id, profile.api_key_env)
        if secret:
            return secret
        return self._config.get_secret(profile.id)

    async def resolve(
        self, provider: str, model: str, api_key: str | None = None
    ) -> Resolved:
        """Resolve *provider*/*model* to an adapter bound to its credential.

        Raises:
            ConfigurationError: unknown provider or model, missing or malformed
                credential, or a profile without an endpoint.
        """
        profile = self.profile(provider)
        wire_model = profile.map_model(model)

        pinned = self._pinned.get(provider)
        if pinned is not None:
            return Resolved(
                pinned, profile, wire_model, pinned.transport or self._transport
            )

        if not profile.endpoint:
            raise ConfigurationError(
                f"Provider {provider!r} has no endpoint configured",
                hint=(
                    f"Set endpoint under [providers.{provider}] in {self._config.path}."
                ),
            )
        if profile.family not in self._families:
            raise ConfigurationError(
                f"Provider {provider!r} names unknown family {profile.family!r}",
                hint=f"Known families: {', '.join(sorted(self._families))}.",
            )

        secret = self.credential(profile, api_key)

        async def build() -> ProviderAdapter:
            auth = build_authenticator(
                profile.auth, secret, provider=provider, env_var=profile.api_key_env
            )
            adapter = self._families[profile.family](profile, auth)
            logger.debug("Constructed %r", adapter)
            return adapter

        adapter = await self._adapters.do((provider, _fingerprint(secret)), build)
        transport = adapter.transport or self._transport
        return Resolved(adapter, profile, wire_model, transport)

    def reload(self) -> None:
        """Re-read persisted configuration and drop cached adapters."""
        self._config.reload()
        self._adapters.clear()
        logger.debug("Registry reloaded")

    async def aclose(self) -> None:
        """Release pooled connections, including adapter-owned transports."""
        owned = {
            id(a.transport): a.transport
            for a in [*self._adapters.values(), *self._pinned.values()]
            if a.transport is not None
        }
        for transport in owned.values():
            await transport.aclose()
        self._adapters.clear()
        await self._transport.aclose()
