from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from Tethra.services.errors import UpstreamFatalError
from Tethra.services.providers.base import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, ProviderKind
from Tethra.services.providers.sse import SSEProviderClient


class UpstreamErrorBody(BaseModel):
    model_config = ConfigDict(extra="ignore")
    message: str = ""
    type: Optional[str] = None
    code: Optional[Union[int, str]] = None


class ChatDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")
    content: Optional[str] = None


class ChatChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")
    delta: Optional[ChatDelta] = None
    finish_reason: Optional[str] = None


# One `chat.completion.chunk` frame (or an error frame) from an OpenAI-compatible endpoint
class ChatCompletionChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")
    choices: Optional[List[ChatChoice]] = None
    error: Optional[Union[UpstreamErrorBody, str]] = None


def upstream_error_message(error: Union[UpstreamErrorBody, str]) -> str:
    if isinstance(error, str):
        return error
    return error.message or error.type or "unknown error"


class OpenAIProvider(SSEProviderClient):
    """OpenAI chat completions; also the wire format for Groq, DeepSeek and OpenRouter."""

    kind = ProviderKind.OPENAI
    base_url = "https://api.openai.com/v1"
    frame_model = ChatCompletionChunk

    def build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self.api_key}",
        }

    def build_request(self, model: str, user_text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        body = {
            "model": model,
            "messages": [{"role": "user", "content": user_text}],
            "stream": True,
            "temperature": DEFAULT_TEMPERATURE,
            "max_tokens": DEFAULT_MAX_TOKENS,
        }
        return f"{self.base_url}/chat/completions", self.build_headers(), body

    def extract(self, frame: ChatCompletionChunk, event: Optional[str]) -> tuple[list[str], bool]:
        if frame.error is not None:
            raise UpstreamFatalError(f"{self.label} API error: {upstream_error_message(frame.error)}")

        pieces: list[str] = []
        finished = False
        for choice in frame.choices or []:
            if choice.delta is not None and choice.delta.content:
                pieces.append(choice.delta.content)
            if choice.finish_reason:
                finished = True
        return pieces, finished


class GroqProvider(OpenAIProvider):
    kind = ProviderKind.GROQ
    base_url = "https://api.groq.com/openai/v1"


class DeepSeekProvider(OpenAIProvider):
    kind = ProviderKind.DEEPSEEK
    base_url = "https://api.deepseek.com/v1"
