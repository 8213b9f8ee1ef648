"""Provider profiles: endpoint, authentication descriptor and model mapping.

A profile names the protocol *family* its adapter implements. Many providers
share a family (most expose an OpenAI-compatible chat endpoint), so the
catalog below is data, not code.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from conduit.errors import ConfigurationError
from conduit.events import ErrorKind


class AuthKind(str, Enum):
    """How credential material is attached to a request."""

    BEARER = "bearer"
    HEADER = "header"
    SIGNED = "signed"
    SERVICE_ACCOUNT = "service_account"
    NONE = "none"


@dataclass(frozen=True)
class AuthDescriptor:
    kind: AuthKind = AuthKind.BEARER
    #: Header carrying the key for BEARER/HEADER auth.
    header: str = "Authorization"
    prefix: str = "Bearer "
    #: SigV4 signing scope for SIGNED auth.
    region: str | None = None
    service: str = "bedrock"
    #: OAuth scopes for SERVICE_ACCOUNT auth.
    scopes: tuple[str, ...] = ("https://www.googleapis.com/auth/cloud-platform",)


@dataclass(frozen=True)
class ProviderProfile:
    """Static description of one provider endpoint."""

    id: str
    family: str
    endpoint: str
    auth: AuthDescriptor = field(default_factory=AuthDescriptor)
    #: Alias -> wire model name. When non-empty, only listed models resolve.
    models: Mapping[str, str] = field(default_factory=dict)
    #: Overrides the family's default request path; may contain ``{model}``.
    path: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    streaming: bool = True
    #: Allow timeout/reset retries after a tool result was committed.
    retry_after_tool_results: bool = False
    #: Conventional environment variable holding the credential.
    api_key_env: str | None = None

    def map_model(self, model: str) -> str:
        """Translate a caller-facing model name to the provider's wire name."""
        if not self.models:
            return model
        if model in self.models:
            return self.models[model]
        if model in self.models.values():
            return model
        known = ", ".join(sorted(self.models))
        raise ConfigurationError(
            f"Unknown model {model!r} for provider {self.id!r}",
            kind=ErrorKind.UNKNOWN_MODEL,
            hint=f"Known models: {known}.",
        )

    def url(self, default_path: str, *, model: str) -> str:
        path = (self.path or default_path).format(model=model)
        return self.endpoint.rstrip("/") + path


def _openai_compatible(
    provider_id: str, endpoint: str, env: str | None
) -> ProviderProfile:
    auth = AuthDescriptor() if env else AuthDescriptor(kind=AuthKind.NONE)
    return ProviderProfile(
        id=provider_id,
        family="openai",
        endpoint=endpoint,
        auth=auth,
        api_key_env=env,
    )


BUILTIN_PROFILES: tuple[ProviderProfile, ...] = (
    _openai_compatible("openai", "https://api.openai.com/v1", "OPENAI_API_KEY"),
    # Endpoint is per-resource (https://<resource>.openai.azure.com); configure it.
    ProviderProfile(
        id="azure-openai",
        family="openai",
        endpoint="",
        auth=AuthDescriptor(kind=AuthKind.HEADER, header="api-key", prefix=""),
        path="/openai/deployments/{model}/chat/completions?api-version=2024-10-21",
        api_key_env="AZURE_OPENAI_API_KEY",
    ),
    _openai_compatible("deepseek", "https://api.deepseek.com/v1", "DEEPSEEK_API_KEY"),
    _openai_compatible("groq", "https://api.groq.com/openai/v1", "GROQ_API_KEY"),
    _openai_compatible("mistral", "https://api.mistral.ai/v1", "MISTRAL_API_KEY"),
    _openai_compatible(
        "openrouter", "https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"
    ),
    _openai_compatible("together", "https://api.together.xyz/v1", "TOGETHER_API_KEY"),
    _openai_compatible("xai", "https://api.x.ai/v1", "XAI_API_KEY"),
    _openai_compatible(
        "perplexity", "https://api.perplexity.ai", "PERPLEXITY_API_KEY"
    ),
    _openai_compatible(
        "fireworks", "https://api.fireworks.ai/inference/v1", "FIREWORKS_API_KEY"
    ),
    _openai_compatible("moonshot", "https://api.moonshot.cn/v1", "MOONSHOT_API_KEY"),
    _openai_compatible(
        "zhipu", "https://open.bigmodel.cn/api/paas/v4", "ZHIPUAI_API_KEY"
    ),
    _openai_compatible(
        "qianwen",
        "https://dashscope.aliyuncs.com/compatible-mode/v1",
        "DASHSCOPE_API_KEY",
    ),
    _openai_compatible("lmstudio", "http://localhost:1234/v1", None),
    _openai_compatible("vllm", "http://localhost:8000/v1", None),
    ProviderProfile(
        id="anthropic",
        family="anthropic",
        endpoint="https://api.anthropic.com",
        auth=AuthDescriptor(kind=AuthKind.HEADER, header="x-api-key", prefix=""),
        headers={"anthropic-version": "2023-06-01"},
        api_key_env="ANTHROPIC_API_KEY",
    ),
    ProviderProfile(
        id="bedrock",
        family="bedrock",
        endpoint="https://bedrock-runtime.us-east-1.amazonaws.com",
        auth=AuthDescriptor(kind=AuthKind.SIGNED, region="us-east-1"),
    ),
    ProviderProfile(
        id="gemini",
        family="gemini",
        endpoint="https://generativelanguage.googleapis.com/v1beta",
        auth=AuthDescriptor(kind=AuthKind.HEADER, header="x-goog-api-key", prefix=""),
        api_key_env="GEMINI_API_KEY",
    ),
    # Endpoint embeds project and location: https://<loc>-aiplatform.googleapis.com
    # /v1/projects/<p>/locations/<loc>/publishers/google
    ProviderProfile(
        id="vertexai",
        family="gemini",
        endpoint="",
        auth=AuthDescriptor(kind=AuthKind.SERVICE_ACCOUNT),
        api_key_env="GOOGLE_APPLICATION_CREDENTIALS",
    ),
    ProviderProfile(
        id="ollama",
        family="ollama",
        endpoint="http://localhost:11434",
        auth=AuthDescriptor(kind=AuthKind.NONE),
    ),
    ProviderProfile(
        id="mock",
        family="mock",
        endpoint="http://mock.invalid",
        auth=AuthDescriptor(kind=AuthKind.NONE),
    ),
)
