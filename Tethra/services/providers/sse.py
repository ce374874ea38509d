"""Server-sent-event decoding shared by the HTTP providers.

Providers push `data: <json>` frames separated by blank lines. OpenAI-style
backends close the stream with a `data: [DONE]` sentinel, which is recognised
here and never handed to a provider as a payload.
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Iterator, Optional

from pydantic import BaseModel, ValidationError

from Tethra.services.errors import TransportDropped, UpstreamHttpError, UpstreamProtocolError
from Tethra.services.providers.base import ProviderClient

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

# Upstream error bodies are kept for diagnostics, but not without bound
_MAX_ERROR_BODY = 2000


@dataclass(frozen=True)
class SSEFrame:
    data: str
    event: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


class SSEDecoder:
    """Incremental line-oriented SSE parser.

    Feed it lines (without their trailing newline); it returns a frame each
    time a blank line completes one. `flush()` returns whatever is pending when
    the connection ends without a final blank line.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: Optional[str] = None

    def feed(self, line: str) -> Optional[SSEFrame]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value.strip() or None
        # id / retry carry nothing we use
        return None

    def flush(self) -> Optional[SSEFrame]:
        return self._dispatch()

    def _dispatch(self) -> Optional[SSEFrame]:
        if not self._data:
            self._event = None
            return None
        frame = SSEFrame(data="\n".join(self._data), event=self._event)
        self._data = []
        self._event = None
        return frame


def decode_sse_lines(lines: Iterable[str]) -> Iterator[SSEFrame]:
    decoder = SSEDecoder()
    for line in lines:
        frame = decoder.feed(line)
        if frame is not None:
            yield frame
    tail = decoder.flush()
    if tail is not None:
        yield tail


async def aiter_sse_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    decoder = SSEDecoder()
    async for line in lines:
        frame = decoder.feed(line)
        if frame is not None:
            yield frame
    tail = decoder.flush()
    if tail is not None:
        yield tail


def parse_frame_json(frame: SSEFrame, model: type[BaseModel]) -> Any:
    """Decode one frame payload against a provider schema, or raise UpstreamProtocolError."""
    try:
        payload = json.loads(frame.data)
    except json.JSONDecodeError as exc:
        raise UpstreamProtocolError(f"invalid JSON in SSE frame: {exc.msg}") from exc
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamProtocolError(f"unexpected SSE frame shape: {exc.error_count()} validation error(s)") from exc


class SSEProviderClient(ProviderClient):
    """HTTP POST + SSE response loop; subclasses supply the request and the delta schema."""

    frame_model: type[BaseModel]

    @abstractmethod
    def build_request(self, model: str, user_text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json body) for a streaming chat request."""

    @abstractmethod
    def extract(self, frame: Any, event: Optional[str]) -> tuple[list[str], bool]:
        """Return (text deltas, terminus seen) for one decoded frame.

        Raises UpstreamFatalError when the frame is an explicit upstream error.
        """

    async def open_stream(self, model: str, user_text: str) -> AsyncIterator[str]:
        url, headers, body = self.build_request(model, user_text)
        async with self._http() as client:
            async with client.stream("POST", url, headers=headers, json=body) as response:
                if not response.is_success:
                    raw = await response.aread()
                    detail = raw.decode("utf-8", errors="replace")[:_MAX_ERROR_BODY]
                    raise UpstreamHttpError(self.label, response.status_code, detail)

                completed = False
                async for frame in aiter_sse_frames(response.aiter_lines()):
                    if frame.is_done:
                        completed = True
                        break
                    try:
                        decoded = parse_frame_json(frame, self.frame_model)
                        tokens, finished = self.extract(decoded, frame.event)
                    except UpstreamProtocolError as exc:
                        logger.warning("sse.frame.skipped: provider=%s error=%s data=%.200s", self.label, exc, frame.data)
                        continue
                    for token in tokens:
                        if token:
                            yield token
                    # Nothing past the terminus is output, even if the upstream keeps sending
                    if finished:
                        completed = True
                        break

                if not completed:
                    raise TransportDropped(f"{self.label} stream closed before the response completed")
