from typing import Optional

import httpx

from .anthropic_provider import AnthropicProvider
from .base import ProviderClient, ProviderKind, TokenStream
from .gemini_provider import GeminiProvider
from .ollama_provider import OllamaProvider
from .openai_provider import DeepSeekProvider, GroqProvider, OpenAIProvider
from .openrouter_provider import OpenRouterProvider

PROVIDER_CLIENTS: dict[ProviderKind, type[ProviderClient]] = {
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GEMINI: GeminiProvider,
    ProviderKind.OPENROUTER: OpenRouterProvider,
    ProviderKind.GROQ: GroqProvider,
    ProviderKind.DEEPSEEK: DeepSeekProvider,
    ProviderKind.OLLAMA: OllamaProvider,
}


def build_provider_client(
    kind: ProviderKind,
    credential: Optional[str],
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None,
) -> ProviderClient:
    return PROVIDER_CLIENTS[kind](credential, http_client=http_client, base_url=base_url)


__all__ = [
    "PROVIDER_CLIENTS",
    "AnthropicProvider",
    "DeepSeekProvider",
    "GeminiProvider",
    "GroqProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "ProviderClient",
    "ProviderKind",
    "TokenStream",
    "build_provider_client",
]
