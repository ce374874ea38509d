from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from Tethra.services.errors import UpstreamFatalError
from Tethra.services.providers.base import DEFAULT_TEMPERATURE, ProviderKind
from Tethra.services.providers.sse import SSEProviderClient

GEMINI_MAX_OUTPUT_TOKENS = 8192


class GeminiPart(BaseModel):
    model_config = ConfigDict(extra="ignore")
    text: Optional[str] = None


class GeminiContent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    parts: Optional[List[GeminiPart]] = None


class GeminiCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    content: Optional[GeminiContent] = None
    finish_reason: Optional[str] = Field(default=None, alias="finishReason")


class GeminiError(BaseModel):
    model_config = ConfigDict(extra="ignore")
    code: Optional[Union[int, str]] = None
    message: str = ""
    status: Optional[str] = None


class GeminiResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    candidates: Optional[List[GeminiCandidate]] = None
    error: Optional[GeminiError] = None


class GeminiProvider(SSEProviderClient):
    kind = ProviderKind.GEMINI
    base_url = "https://generativelanguage.googleapis.com/v1beta"
    frame_model = GeminiResponse

    def build_request(self, model: str, user_text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"
        # API key goes in a header, never in the query string
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "x-goog-api-key": self.api_key or "",
        }
        body = {
            "contents": [{"role": "user", "parts": [{"text": user_text}]}],
            "generationConfig": {
                "temperature": DEFAULT_TEMPERATURE,
                "maxOutputTokens": GEMINI_MAX_OUTPUT_TOKENS,
            },
        }
        return url, headers, body

    def extract(self, frame: GeminiResponse, event: Optional[str]) -> tuple[list[str], bool]:
        if frame.error is not None:
            code = f" (code: {frame.error.code})" if frame.error.code is not None else ""
            raise UpstreamFatalError(f"Gemini API error: {frame.error.message}{code}")

        pieces: list[str] = []
        finished = False
        for candidate in frame.candidates or []:
            if candidate.content is not None:
                for part in candidate.content.parts or []:
                    if part.text:
                        pieces.append(part.text)
            if candidate.finish_reason:
                finished = True
        return pieces, finished
