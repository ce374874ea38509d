"""Maps an opaque model identifier to a provider, an upstream model name and a credential.

Rules are checked in a fixed order and the first match wins. Explicit
provider patterns come before the generic ``vendor/model`` catch-all, which
in turn comes before the local-daemon rules, so ``name:tag`` identifiers are
never mistaken for OpenRouter models.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from Tethra.services.errors import CredentialMissing
from Tethra.services.providers import ProviderClient, ProviderKind, build_provider_client
from Tethra.settings import Settings

logger = logging.getLogger(__name__)

BASELINE_MODEL = "gemini-1.5-flash-latest"

# Order in which providers are tried when the caller supplies no model
FALLBACK_ORDER = (
    ProviderKind.GEMINI,
    ProviderKind.OPENAI,
    ProviderKind.ANTHROPIC,
    ProviderKind.OPENROUTER,
    ProviderKind.GROQ,
    ProviderKind.DEEPSEEK,
)

DEFAULT_MODEL = {
    ProviderKind.GEMINI: "gemini-1.5-flash-latest",
    ProviderKind.OPENAI: "gpt-4o-mini",
    ProviderKind.ANTHROPIC: "claude-3-haiku-20240307",
    ProviderKind.OPENROUTER: "openai/gpt-4o-mini",
    ProviderKind.GROQ: "groq/llama-3.1-8b-instant",
    ProviderKind.DEEPSEEK: "deepseek-chat",
    ProviderKind.OLLAMA: "llama3.2:3b",
}

GROQ_NAMESPACE = "groq/"

OPENROUTER_VENDOR_PREFIXES = (
    "anthropic/",
    "openai/",
    "google/",
    "meta-llama/",
    "mistral/",
    "mistralai/",
    "cohere/",
    "deepseek/",
    "qwen/",
    "x-ai/",
)

LOCAL_MODEL_FAMILIES = ("llama", "qwen", "codellama", "mistral", "mixtral", "phi", "gemma", "deepseek-r1", "nomic")


def _is_openrouter(model: str) -> bool:
    if "openrouter" in model:
        return True
    if any(vendor in model for vendor in OPENROUTER_VENDOR_PREFIXES):
        return True
    return "/" in model and ":" not in model


def _is_local(model: str) -> bool:
    return ":" in model or model.startswith(LOCAL_MODEL_FAMILIES)


_RULES: tuple[tuple[ProviderKind, Callable[[str], bool]], ...] = (
    (ProviderKind.GEMINI, lambda m: m.startswith("gemini")),
    (ProviderKind.OPENAI, lambda m: m.startswith(("gpt-", "o1", "o3", "o4", "chatgpt-"))),
    (ProviderKind.ANTHROPIC, lambda m: m.startswith("claude-")),
    (ProviderKind.GROQ, lambda m: m.startswith(GROQ_NAMESPACE)),
    (ProviderKind.DEEPSEEK, lambda m: m.startswith("deepseek-") and not m.startswith("deepseek-r1:")),
    (ProviderKind.OPENROUTER, _is_openrouter),
    (ProviderKind.OLLAMA, _is_local),
)


def classify(model: str) -> ProviderKind:
    """Provider for a model identifier. Total: unknown names fall through to the local daemon."""
    normalized = model.strip().lower()
    for kind, matches in _RULES:
        if matches(normalized):
            return kind
    return ProviderKind.OLLAMA


def upstream_model_name(kind: ProviderKind, model: str) -> str:
    model = model.strip()
    if kind is ProviderKind.GROQ and model.lower().startswith(GROQ_NAMESPACE):
        return model[len(GROQ_NAMESPACE):]
    return model


@dataclass(frozen=True)
class Route:
    kind: ProviderKind
    model: str
    upstream_model: str
    credential: Optional[str] = None
    base_url: Optional[str] = None
    error: Optional[CredentialMissing] = None

    def open_client(self, http_client: Optional[httpx.AsyncClient] = None) -> ProviderClient:
        if self.error is not None:
            raise self.error
        return build_provider_client(self.kind, self.credential, http_client=http_client, base_url=self.base_url)


class ModelRouter:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _usable(self, kind: ProviderKind) -> bool:
        return self.settings.enabled(kind) and self.settings.credential_for(kind) is not None

    def default_model(self) -> str:
        for kind in FALLBACK_ORDER:
            if not self._usable(kind):
                continue
            configured = self.settings.configured_models(kind)
            if configured:
                return configured[0]
            return DEFAULT_MODEL[kind]
        return BASELINE_MODEL

    def resolve(self, model: Optional[str] = None) -> Route:
        """Resolve a model identifier (or the fallback model) to a route. Never raises."""
        chosen = (model or "").strip() or self.default_model()
        kind = classify(chosen)
        upstream = upstream_model_name(kind, chosen)
        base_url = self.settings.base_url_for(kind)

        if not kind.requires_credential:
            return Route(kind=kind, model=chosen, upstream_model=upstream, base_url=base_url)

        if not self.settings.enabled(kind):
            error = CredentialMissing(kind.label, f"provider {kind.label} is disabled in settings")
            logger.info("router.disabled: model=%s provider=%s", chosen, kind.value)
            return Route(kind=kind, model=chosen, upstream_model=upstream, base_url=base_url, error=error)

        credential = self.settings.credential_for(kind)
        if credential is None:
            logger.info("router.credential.missing: model=%s provider=%s", chosen, kind.value)
            return Route(
                kind=kind,
                model=chosen,
                upstream_model=upstream,
                base_url=base_url,
                error=CredentialMissing(kind.label),
            )
        return Route(kind=kind, model=chosen, upstream_model=upstream, credential=credential, base_url=base_url)
