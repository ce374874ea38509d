import json

import httpx
import pytest

from conftest import openai_chunk, openai_stream, sse_body, sse_response
from Tethra.services.errors import (
    CredentialMissing,
    ServiceUnreachable,
    TransportDropped,
    UpstreamFatalError,
    UpstreamHttpError,
)
from Tethra.services.providers import (
    AnthropicProvider,
    GeminiProvider,
    GroqProvider,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    build_provider_client,
)
from Tethra.services.providers.base import ProviderKind, TokenStream


async def collect(stream: TokenStream):
    return [token async for token in stream]


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_openai_tokens_in_order_and_request_shape():
    seen = []

    def handler(request):
        seen.append(request)
        return sse_response(openai_stream("Hel", "lo", " world"))

    async with mock_client(handler) as client:
        stream = OpenAIProvider("sk-test", http_client=client).stream("gpt-4o-mini", "hi")
        tokens = await collect(stream)

    assert tokens == ["Hel", "lo", " world"]
    assert stream.error is None
    request = seen[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["stream"] is True
    assert body["messages"] == [{"role": "user", "content": "hi"}]
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 4096


@pytest.mark.asyncio
async def test_done_sentinel_is_never_a_token():
    body = sse_body([openai_chunk("a")], done=True)
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == ["a"]
    assert stream.error is None


@pytest.mark.asyncio
async def test_empty_deltas_are_not_emitted():
    body = sse_body([openai_chunk(""), openai_chunk("a"), openai_chunk(None), openai_chunk(finish_reason="stop")])
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == ["a"]
    assert stream.token_count == 1


@pytest.mark.asyncio
async def test_malformed_frame_skipped_and_stream_continues():
    body = sse_body([openai_chunk("a"), "{broken", {"choices": 3}, openai_chunk("b")], done=True)
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == ["a", "b"]
    assert stream.error is None


@pytest.mark.asyncio
async def test_http_error_status_carries_body():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    async with mock_client(handler) as client:
        stream = OpenAIProvider("bad", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == []

    assert isinstance(stream.error, UpstreamHttpError)
    assert stream.error.status == 401
    assert "HTTP 401" in stream.error.user_message()
    assert "Incorrect API key provided" in stream.error.user_message()


@pytest.mark.asyncio
async def test_error_object_mid_stream_is_fatal():
    body = sse_body([openai_chunk("a"), {"error": {"message": "rate limited", "type": "rate_limit"}}, openai_chunk("b")])
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == ["a"]

    assert isinstance(stream.error, UpstreamFatalError)
    assert stream.error.user_message() == "OpenAI API error: rate limited"


@pytest.mark.asyncio
async def test_stream_without_terminus_is_transport_dropped():
    body = sse_body([openai_chunk("a"), openai_chunk("b")])
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == ["a", "b"]
    assert isinstance(stream.error, TransportDropped)


@pytest.mark.asyncio
async def test_frames_after_finish_reason_are_ignored():
    body = sse_body([openai_chunk("a", finish_reason="stop"), openai_chunk("LATE")], done=True)
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == ["a"]
    assert stream.error is None


@pytest.mark.asyncio
async def test_anthropic_frames_after_message_stop_are_ignored():
    events = [
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hi"}},
        {"type": "message_stop"},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "LATE"}},
    ]
    async with mock_client(lambda r: sse_response(sse_body(events))) as client:
        stream = AnthropicProvider("k", http_client=client).stream("claude-3-haiku-20240307", "q")
        assert await collect(stream) == ["hi"]
    assert stream.error is None


@pytest.mark.asyncio
async def test_gemini_frames_after_finish_reason_are_ignored():
    body = sse_body(
        [
            {"candidates": [{"content": {"parts": [{"text": "done"}]}, "finishReason": "STOP"}]},
            {"candidates": [{"content": {"parts": [{"text": "LATE"}]}}]},
        ]
    )
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = GeminiProvider("gk", http_client=client).stream("gemini-1.5-flash-latest", "q")
        assert await collect(stream) == ["done"]


@pytest.mark.asyncio
async def test_nothing_emitted_after_terminal_error():
    body = sse_body([{"error": "boom"}])
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == []
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
    assert stream.finished


@pytest.mark.asyncio
async def test_read_timeout_maps_to_fatal_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with mock_client(handler) as client:
        stream = OpenAIProvider("k", http_client=client).stream("gpt-4o", "x")
        assert await collect(stream) == []
    assert isinstance(stream.error, UpstreamFatalError)
    assert "timed out" in stream.error.user_message()


@pytest.mark.asyncio
async def test_groq_uses_its_endpoint():
    seen = []

    def handler(request):
        seen.append(request)
        return sse_response(openai_stream("x"))

    async with mock_client(handler) as client:
        await collect(GroqProvider("gk", http_client=client).stream("llama-3.1-8b-instant", "q"))
    assert str(seen[0].url) == "https://api.groq.com/openai/v1/chat/completions"
    assert json.loads(seen[0].content)["model"] == "llama-3.1-8b-instant"


@pytest.mark.asyncio
async def test_openrouter_sends_attribution_headers():
    seen = []

    def handler(request):
        seen.append(request)
        return sse_response(openai_stream("x"))

    async with mock_client(handler) as client:
        await collect(OpenRouterProvider("ork", http_client=client).stream("anthropic/claude-3.5-sonnet", "q"))
    request = seen[0]
    assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
    assert request.headers["http-referer"] == "https://tethra.com"
    assert request.headers["x-title"] == "Tethra AI Chat"


@pytest.mark.asyncio
async def test_anthropic_content_block_deltas():
    seen = []
    events = [
        ("message_start", {"type": "message_start", "message": {"id": "m1"}}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        ("ping", {"type": "ping"}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}}),
        ("content_block_stop", {"type": "content_block_stop", "index": 0}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}}),
        ("message_stop", {"type": "message_stop"}),
    ]
    body = "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode()

    def handler(request):
        seen.append(request)
        return sse_response(body)

    async with mock_client(handler) as client:
        stream = AnthropicProvider("sk-ant", http_client=client).stream("claude-3-haiku-20240307", "q")
        assert await collect(stream) == ["Hi", " there"]

    assert stream.error is None
    request = seen[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "sk-ant"
    assert request.headers["anthropic-version"] == "2023-06-01"


@pytest.mark.asyncio
async def test_anthropic_error_event():
    body = sse_body([{"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}])
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = AnthropicProvider("k", http_client=client).stream("claude-3-haiku-20240307", "q")
        assert await collect(stream) == []
    assert stream.error.user_message() == "Anthropic API error: Overloaded"


@pytest.mark.asyncio
async def test_gemini_candidates_and_key_header():
    seen = []
    body = sse_body(
        [
            {"candidates": [{"content": {"parts": [{"text": "Bon"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "jour"}]}, "finishReason": "STOP"}]},
        ]
    )

    def handler(request):
        seen.append(request)
        return sse_response(body)

    async with mock_client(handler) as client:
        stream = GeminiProvider("gk", http_client=client).stream("gemini-1.5-flash-latest", "q")
        assert await collect(stream) == ["Bon", "jour"]

    request = seen[0]
    assert request.url.path.endswith("/models/gemini-1.5-flash-latest:streamGenerateContent")
    assert request.url.params["alt"] == "sse"
    assert "key" not in request.url.params
    assert request.headers["x-goog-api-key"] == "gk"
    assert json.loads(request.content)["generationConfig"]["maxOutputTokens"] == 8192


@pytest.mark.asyncio
async def test_gemini_error_includes_code():
    body = sse_body([{"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}}])
    async with mock_client(lambda r: sse_response(body)) as client:
        stream = GeminiProvider("gk", http_client=client).stream("gemini-1.5-pro-latest", "q")
        await collect(stream)
    assert stream.error.user_message() == "Gemini API error: API key not valid (code: 400)"


def ndjson(*rows) -> bytes:
    return "".join(json.dumps(r) + "\n" for r in rows).encode()


@pytest.mark.asyncio
async def test_ollama_ndjson_stream():
    seen = []
    body = ndjson(
        {"message": {"role": "assistant", "content": "loc"}, "done": False},
        {"message": {"role": "assistant", "content": "al"}, "done": False},
        {"message": {"role": "assistant", "content": ""}, "done": True},
    )

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=body)

    async with mock_client(handler) as client:
        stream = OllamaProvider(http_client=client, base_url="http://ollama.test:11434").stream("llama3.2:3b", "q")
        assert await collect(stream) == ["loc", "al"]

    assert stream.error is None
    assert str(seen[0].url) == "http://ollama.test:11434/api/chat"
    assert json.loads(seen[0].content)["options"] == {"temperature": 0.7, "num_predict": 4096}


@pytest.mark.asyncio
async def test_ollama_malformed_line_skipped():
    body = b'{"message": {"content": "a"}}\nnot json\n{"message": {"content": "b"}, "done": true}\n'
    async with mock_client(lambda r: httpx.Response(200, content=body)) as client:
        stream = OllamaProvider(http_client=client).stream("llama3.2:3b", "q")
        assert await collect(stream) == ["a", "b"]
    assert stream.error is None


@pytest.mark.asyncio
async def test_ollama_missing_done_is_transport_dropped():
    body = ndjson({"message": {"content": "a"}, "done": False})
    async with mock_client(lambda r: httpx.Response(200, content=body)) as client:
        stream = OllamaProvider(http_client=client).stream("llama3.2:3b", "q")
        assert await collect(stream) == ["a"]
    assert isinstance(stream.error, TransportDropped)


@pytest.mark.asyncio
async def test_ollama_not_running_is_actionable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        stream = OllamaProvider(http_client=client).stream("llama3.2:3b", "q")
        assert await collect(stream) == []

    assert isinstance(stream.error, ServiceUnreachable)
    assert "Ollama is not running" in stream.error.user_message()


@pytest.mark.asyncio
async def test_ollama_model_not_found_error_body():
    def handler(request):
        return httpx.Response(404, json={"error": "model 'nope' not found"})

    async with mock_client(handler) as client:
        stream = OllamaProvider(http_client=client).stream("nope:1b", "q")
        await collect(stream)
    assert isinstance(stream.error, UpstreamHttpError)
    assert stream.error.user_message() == "Ollama API error (HTTP 404): model 'nope' not found"


@pytest.mark.asyncio
async def test_ollama_lists_local_models():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.2:3b"}, {"name": "qwen2.5:7b"}]})

    async with mock_client(handler) as client:
        models = await OllamaProvider(http_client=client).list_local_models()
    assert models == ["llama3.2:3b", "qwen2.5:7b"]


def test_build_provider_client_picks_class():
    client = build_provider_client(ProviderKind.DEEPSEEK, "dk")
    assert client.label == "DeepSeek"
    assert client.base_url == "https://api.deepseek.com/v1"
    assert build_provider_client(ProviderKind.OLLAMA, None, base_url="http://h:1/").base_url == "http://h:1"


def test_credential_missing_message():
    assert CredentialMissing("Anthropic").user_message() == "credential missing for provider Anthropic"
