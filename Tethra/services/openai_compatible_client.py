from typing import Dict, Optional

import httpx
from openai import AsyncOpenAI

from Tethra.config import OLLAMA_HOST
from Tethra.services.providers.base import ProviderKind, default_timeout

# OpenAI-compatible endpoints, used for non-streaming calls (model listing, titles)
_PROVIDER_BASE_URL: Dict[ProviderKind, Optional[str]] = {
    ProviderKind.OPENAI: None,
    ProviderKind.GROQ: "https://api.groq.com/openai/v1",
    ProviderKind.GEMINI: "https://generativelanguage.googleapis.com/v1beta/openai",
    ProviderKind.ANTHROPIC: "https://api.anthropic.com/v1",
    ProviderKind.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderKind.DEEPSEEK: "https://api.deepseek.com/v1",
    ProviderKind.OLLAMA: f"{OLLAMA_HOST}/v1",
}


# Create an async OpenAI-compatible client for one provider with an explicit credential
def get_async_openai_compatible_client(
    kind: ProviderKind,
    api_key: Optional[str],
    *,
    base_url: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AsyncOpenAI:
    if not api_key:
        if kind.requires_credential:
            raise ValueError(f"Missing API key for provider '{kind.value}'.")
        # Local daemon ignores the key, but the SDK requires one
        api_key = "ollama"

    kwargs = {"api_key": api_key, "timeout": default_timeout(), "max_retries": 0}
    url = base_url or _PROVIDER_BASE_URL.get(kind)
    # Overrides for these two point at the native API root, not the compatibility layer
    if kind is ProviderKind.OLLAMA and base_url:
        url = f"{base_url.rstrip('/')}/v1"
    elif kind is ProviderKind.GEMINI and base_url:
        url = f"{base_url.rstrip('/')}/openai"
    if url:
        kwargs["base_url"] = url
    if http_client is not None:
        kwargs["http_client"] = http_client
    return AsyncOpenAI(**kwargs)
