from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from Tethra.services.errors import UpstreamFatalError
from Tethra.services.providers.base import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, ProviderKind
from Tethra.services.providers.sse import SSEProviderClient

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Optional[str] = None
    text: Optional[str] = None


class AnthropicContentBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Optional[str] = None
    text: Optional[str] = None


class AnthropicError(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: Optional[str] = None
    message: str = ""


# Messages API stream event; `type` decides which of the optional fields carries text
class AnthropicEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: str
    delta: Optional[AnthropicDelta] = None
    content_block: Optional[AnthropicContentBlock] = None
    error: Optional[AnthropicError] = None


class AnthropicProvider(SSEProviderClient):
    kind = ProviderKind.ANTHROPIC
    base_url = "https://api.anthropic.com/v1"
    frame_model = AnthropicEvent

    def build_request(self, model: str, user_text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        body = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": DEFAULT_TEMPERATURE,
            "messages": [{"role": "user", "content": user_text}],
            "stream": True,
        }
        return f"{self.base_url}/messages", headers, body

    def extract(self, frame: AnthropicEvent, event: Optional[str]) -> tuple[list[str], bool]:
        if frame.error is not None or frame.type == "error":
            message = frame.error.message if frame.error is not None else "unknown error"
            raise UpstreamFatalError(f"Anthropic API error: {message}")

        if frame.type == "content_block_delta" and frame.delta is not None and frame.delta.text:
            return [frame.delta.text], False
        if frame.type == "content_block_start" and frame.content_block is not None and frame.content_block.text:
            return [frame.content_block.text], False
        # message_start, ping, content_block_stop, message_delta carry no text
        return [], frame.type == "message_stop"
