"""Provider adapters, one per protocol family.

The registry selects an adapter class through :data:`ADAPTER_FAMILIES` using
the profile's ``family``; nothing inspects response shapes at runtime.
"""

from __future__ import annotations

from .anthropic import AnthropicAdapter
from .base import BaseAdapter, ProviderAdapter
from .bedrock import BedrockAdapter
from .gemini import GeminiAdapter
from .mock import MockAdapter
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter

ADAPTER_FAMILIES: dict[str, type[BaseAdapter]] = {
    OpenAIAdapter.family: OpenAIAdapter,
    AnthropicAdapter.family: AnthropicAdapter,
    BedrockAdapter.family: BedrockAdapter,
    GeminiAdapter.family: GeminiAdapter,
    OllamaAdapter.family: OllamaAdapter,
    MockAdapter.family: MockAdapter,
}

__all__ = [
    "ADAPTER_FAMILIES",
    "AnthropicAdapter",
    "BaseAdapter",
    "BedrockAdapter",
    "GeminiAdapter",
    "MockAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
]
