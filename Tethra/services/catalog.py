from __future__ import annotations

import logging
from typing import Optional

import httpx
from openai import OpenAIError

from Tethra.schemas.chat import ListedModel
from Tethra.services.errors import GatewayError
from Tethra.services.model_router import GROQ_NAMESPACE
from Tethra.services.openai_compatible_client import get_async_openai_compatible_client
from Tethra.services.providers import ProviderKind
from Tethra.services.providers.ollama_provider import OllamaProvider
from Tethra.settings import Settings

logger = logging.getLogger(__name__)

STATIC_MODELS: dict[ProviderKind, list[str]] = {
    ProviderKind.OPENAI: ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"],
    ProviderKind.ANTHROPIC: [
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    ],
    ProviderKind.GEMINI: [
        "gemini-1.5-pro-latest",
        "gemini-1.5-flash-latest",
        "gemini-1.5-flash-8b-latest",
        "gemini-2.0-flash-exp",
    ],
    ProviderKind.GROQ: [
        "groq/llama-3.1-70b-versatile",
        "groq/llama-3.1-8b-instant",
        "groq/mixtral-8x7b-32768",
        "groq/gemma2-9b-it",
    ],
    ProviderKind.OPENROUTER: [
        "anthropic/claude-3.5-sonnet",
        "openai/gpt-4o",
        "google/gemini-pro-1.5",
        "meta-llama/llama-3.2-90b-instruct",
        "mistralai/mistral-large",
    ],
    ProviderKind.DEEPSEEK: ["deepseek-chat", "deepseek-coder", "deepseek-reasoner"],
    ProviderKind.OLLAMA: ["llama3.2:3b", "llama3.1:8b", "llama3.1:70b", "qwen2.5:7b", "codellama:7b"],
}

# Providers whose live catalog is worth fetching; the rest use the static list
_REMOTE_CATALOG = (ProviderKind.OPENROUTER, ProviderKind.GROQ, ProviderKind.OLLAMA)

CATALOG_ORDER = (
    ProviderKind.OPENAI,
    ProviderKind.ANTHROPIC,
    ProviderKind.GEMINI,
    ProviderKind.GROQ,
    ProviderKind.OPENROUTER,
    ProviderKind.DEEPSEEK,
    ProviderKind.OLLAMA,
)


class ModelCatalog:
    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client

    async def _fetch_remote(self, kind: ProviderKind) -> list[str]:
        base_url = self.settings.base_url_for(kind)
        if kind is ProviderKind.OLLAMA:
            provider = OllamaProvider(http_client=self._http_client, base_url=base_url)
            return await provider.list_local_models()

        client = get_async_openai_compatible_client(
            kind,
            self.settings.credential_for(kind),
            base_url=base_url,
            http_client=self._http_client,
        )
        try:
            page = await client.models.list()
            ids = [m.id for m in page.data]
        finally:
            if self._http_client is None:
                await client.close()
        if kind is ProviderKind.GROQ:
            ids = [f"{GROQ_NAMESPACE}{i}" for i in ids]
        return ids

    async def list_models_for(self, kind: ProviderKind) -> tuple[list[str], bool]:
        """Model ids for one provider and whether they came from a live source.

        Configured models win; otherwise a remote catalog is tried where the
        provider has one, falling back to the static list.
        """
        configured = self.settings.configured_models(kind)
        if configured is not None:
            return configured, True

        if kind in _REMOTE_CATALOG and (not kind.requires_credential or self.settings.credential_for(kind)):
            try:
                models = await self._fetch_remote(kind)
                if models:
                    return models, True
                logger.info("catalog.remote.empty: provider=%s", kind.value)
            except (GatewayError, OpenAIError, httpx.HTTPError, ValueError) as exc:
                logger.warning("catalog.remote.error: provider=%s error=%s", kind.value, exc)
        return list(STATIC_MODELS[kind]), False

    async def list_chat_models(self) -> list[ListedModel]:
        out: list[ListedModel] = []
        for kind in CATALOG_ORDER:
            if kind.requires_credential:
                if not self.settings.credential_for(kind):
                    continue
                models, _live = await self.list_models_for(kind)
                enabled = self.settings.enabled(kind)
            else:
                models, live = await self.list_models_for(kind)
                # Static local models are listed but unusable while the daemon is down
                enabled = live and self.settings.enabled(kind)
            out.extend(ListedModel(model=m, adapter_kind=kind.label, enabled=enabled) for m in models)
        logger.info("catalog.listed: models=%d", len(out))
        return out
