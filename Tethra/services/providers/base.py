from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from Tethra.config import UPSTREAM_CONNECT_TIMEOUT, UPSTREAM_READ_TIMEOUT
from Tethra.services.errors import GatewayError, TransportDropped, UpstreamFatalError

logger = logging.getLogger(__name__)

# Fixed generation parameters; not user-tunable
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096


class ProviderKind(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    GROQ = "groq"
    DEEPSEEK = "deepseek"
    OLLAMA = "ollama"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def requires_credential(self) -> bool:
        return self is not ProviderKind.OLLAMA


_LABELS = {
    ProviderKind.OPENAI: "OpenAI",
    ProviderKind.ANTHROPIC: "Anthropic",
    ProviderKind.GEMINI: "Gemini",
    ProviderKind.OPENROUTER: "OpenRouter",
    ProviderKind.GROQ: "Groq",
    ProviderKind.DEEPSEEK: "DeepSeek",
    ProviderKind.OLLAMA: "Ollama",
}


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(UPSTREAM_READ_TIMEOUT, connect=UPSTREAM_CONNECT_TIMEOUT)


class ProviderClient(ABC):
    """One streaming chat backend.

    Subclasses implement `open_stream`, the raw decode loop: an async generator
    that yields text deltas in arrival order and raises a `GatewayError` to
    terminate with an error. Callers normally go through `stream()`, which
    wraps that loop in a `TokenStream`.
    """

    kind: ProviderKind
    base_url: str = ""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ):
        self.api_key = api_key
        self._http_client = http_client
        if base_url:
            self.base_url = base_url.rstrip("/")

    @property
    def label(self) -> str:
        return self.kind.label

    # Yields the shared client when one was injected, otherwise a private one closed afterwards
    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=default_timeout()) as client:
            yield client

    @abstractmethod
    def open_stream(self, model: str, user_text: str) -> AsyncIterator[str]:
        ...

    def stream(self, model: str, user_text: str) -> "TokenStream":
        return TokenStream(self.label, self.open_stream(model, user_text))


class TokenStream:
    """Normalized view over a provider decode loop: next token, or end, or error.

    Iterating yields non-empty tokens in production order. Iteration stops at
    the first terminal condition; afterwards `error` holds the failure (or None
    for a clean end) and nothing more is produced.
    """

    def __init__(self, provider: str, source: AsyncIterator[str]):
        self.provider = provider
        self._source = source
        self.error: Optional[GatewayError] = None
        self.finished = False
        self.token_count = 0

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> str:
        while not self.finished:
            try:
                token = await self._source.__anext__()
            except StopAsyncIteration:
                self.finished = True
                break
            except GatewayError as exc:
                await self._fail(exc)
                break
            except httpx.TimeoutException as exc:
                await self._fail(UpstreamFatalError(f"{self.provider} upstream timed out ({type(exc).__name__})"))
                break
            except httpx.TransportError as exc:
                await self._fail(TransportDropped(f"{self.provider} connection failed: {exc or type(exc).__name__}"))
                break
            except Exception as exc:
                logger.exception("provider.stream.unexpected: provider=%s", self.provider)
                await self._fail(UpstreamFatalError(f"{self.provider} stream failed: {exc}"))
                break

            if not isinstance(token, str) or not token:
                continue
            self.token_count += 1
            return token
        raise StopAsyncIteration

    async def _fail(self, exc: GatewayError) -> None:
        self.error = exc
        self.finished = True
        logger.warning("provider.stream.error: provider=%s tokens=%d error=%s", self.provider, self.token_count, exc)
        await self.aclose()

    async def aclose(self) -> None:
        self.finished = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.debug("provider.stream.close.error: provider=%s", self.provider, exc_info=True)
