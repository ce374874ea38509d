from __future__ import annotations

import json
import logging
from typing import AsyncIterator, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from Tethra.config import OLLAMA_HOST
from Tethra.services.errors import ServiceUnreachable, TransportDropped, UpstreamFatalError, UpstreamHttpError
from Tethra.services.providers.base import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, ProviderClient, ProviderKind

logger = logging.getLogger(__name__)

NOT_RUNNING_MESSAGE = "Ollama is not running. Please start Ollama first."


class OllamaMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    role: Optional[str] = None
    content: Optional[str] = None


# One line of the /api/chat newline-delimited JSON stream
class OllamaChatChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")
    message: Optional[OllamaMessage] = None
    done: bool = False
    error: Optional[str] = None


class OllamaModel(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: str


class OllamaTags(BaseModel):
    model_config = ConfigDict(extra="ignore")
    models: List[OllamaModel] = []


class OllamaProvider(ProviderClient):
    """Local Ollama daemon. No credential; streams NDJSON chat responses."""

    kind = ProviderKind.OLLAMA
    base_url = OLLAMA_HOST

    async def open_stream(self, model: str, user_text: str) -> AsyncIterator[str]:
        body = {
            "model": model,
            "messages": [{"role": "user", "content": user_text}],
            "stream": True,
            "options": {"temperature": DEFAULT_TEMPERATURE, "num_predict": DEFAULT_MAX_TOKENS},
        }
        try:
            async with self._http() as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=body) as response:
                    if not response.is_success:
                        raw = await response.aread()
                        raise UpstreamHttpError(self.label, response.status_code, _error_detail(raw))

                    completed = False
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        chunk = _parse_chunk(line)
                        if chunk is None:
                            continue
                        if chunk.error:
                            raise UpstreamFatalError(f"Ollama error: {chunk.error}")
                        if chunk.message is not None and chunk.message.content:
                            yield chunk.message.content
                        if chunk.done:
                            completed = True
                            break

                    if not completed:
                        raise TransportDropped("Ollama stream closed before the response completed")
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            logger.warning("ollama.unreachable: host=%s error=%s", self.base_url, exc)
            raise ServiceUnreachable(NOT_RUNNING_MESSAGE) from exc

    async def list_local_models(self) -> list[str]:
        try:
            async with self._http() as client:
                response = await client.get(f"{self.base_url}/api/tags")
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise ServiceUnreachable("Ollama is not running. Please start Ollama with 'ollama serve' first.") from exc
        if not response.is_success:
            raise UpstreamHttpError(self.label, response.status_code, _error_detail(response.content))
        try:
            tags = OllamaTags.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamFatalError(f"Ollama returned an unexpected model list: {exc}") from exc
        return [m.name for m in tags.models]


def _parse_chunk(line: str) -> Optional[OllamaChatChunk]:
    try:
        return OllamaChatChunk.model_validate(json.loads(line))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("ollama.chunk.skipped: error=%s data=%.200s", exc, line)
        return None


def _error_detail(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text[:2000]
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return text[:2000]
