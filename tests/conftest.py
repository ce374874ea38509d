from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Callable, Dict, Iterable, List

# Point the default data dir somewhere disposable before any Tethra module is imported
os.environ.setdefault("TETHRA_DATA_DIR", tempfile.mkdtemp(prefix="tethra-tests-"))

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from Tethra.database import init_db, make_engine
from Tethra.services.chat_stream import ChatOrchestrator
from Tethra.services.events import EventBus
from Tethra.services.model_router import ModelRouter
from Tethra.services.storage import ChatStorage
from Tethra.settings import Settings

Handler = Callable[[httpx.Request], httpx.Response]


def sse_body(payloads: Iterable[Any], done: bool = False) -> bytes:
    """Encode payloads as `data:` frames; dicts are JSON-encoded, strings sent raw."""
    out: List[str] = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        out.append(f"data: {data}\n\n")
    if done:
        out.append("data: [DONE]\n\n")
    return "".join(out).encode("utf-8")


def openai_chunk(text: str = None, finish_reason: str = None) -> Dict[str, Any]:
    delta = {"content": text} if text is not None else {}
    return {"object": "chat.completion.chunk", "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def openai_stream(*tokens: str) -> bytes:
    return sse_body([openai_chunk(t) for t in tokens] + [openai_chunk(finish_reason="stop")], done=True)


def sse_response(body: bytes, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, headers={"content-type": "text/event-stream"}, content=body)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def storage(session_factory) -> ChatStorage:
    return ChatStorage(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings.from_mapping(
        {
            "providers": {
                "openai": {"api_key": "sk-test"},
                "anthropic": {"api_key": "sk-ant-test"},
            }
        }
    )


@pytest.fixture
def upstream():
    """Routes every outgoing HTTP request to `upstream.handler`, recording what was sent."""

    class Upstream:
        def __init__(self) -> None:
            self.requests: List[httpx.Request] = []
            self.handler: Handler = lambda request: sse_response(openai_stream("ok"))

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

        def client(self) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(self))

    return Upstream()


@pytest.fixture
def orchestrator_factory(storage, settings, upstream):
    def build(settings_override: Settings = None, **kwargs) -> ChatOrchestrator:
        router = ModelRouter(settings_override or settings)
        return ChatOrchestrator(storage, router, EventBus(), http_client=upstream.client(), **kwargs)

    return build
