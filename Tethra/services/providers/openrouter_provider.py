from __future__ import annotations

from Tethra.services.providers.base import ProviderKind
from Tethra.services.providers.openai_provider import OpenAIProvider

APP_REFERER = "https://tethra.com"
APP_TITLE = "Tethra AI Chat"


# OpenRouter speaks the OpenAI chunk format; it only differs in endpoint and attribution headers
class OpenRouterProvider(OpenAIProvider):
    kind = ProviderKind.OPENROUTER
    base_url = "https://openrouter.ai/api/v1"

    def build_headers(self) -> dict[str, str]:
        headers = super().build_headers()
        headers["HTTP-Referer"] = APP_REFERER
        headers["X-Title"] = APP_TITLE
        return headers
