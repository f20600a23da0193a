"""Unit tests for the Ollama client against a stubbed transport."""
import json

import httpx
import pytest

from corpusqa import config
from corpusqa.errors import UpstreamError
from corpusqa.llm_client import OllamaClient
from corpusqa.rag.backends import OllamaEmbedder, OllamaGenerator


def _ndjson(*messages) -> bytes:
    return "".join(json.dumps(m) + "\n" for m in messages).encode("utf-8")


def _client(handler) -> OllamaClient:
    return OllamaClient(base_url="http://ollama.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_embed_posts_batch_and_returns_vectors() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[1, 0], [0.5, 0.5]]})

    vectors = await _client(handler).embed(["a", "b"], model="nomic-embed-text")

    assert seen["path"] == "/api/embed"
    assert seen["body"] == {"model": "nomic-embed-text", "input": ["a", "b"]}
    assert vectors == [[1.0, 0.0], [0.5, 0.5]]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"embeddings": [[1.0]]},
        {"embeddings": [[1.0], []]},
        {"something": "else"},
    ],
)
async def test_embed_rejects_malformed_payload(payload) -> None:
    client = _client(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(UpstreamError):
        await client.embed(["a", "b"], model="m")


@pytest.mark.asyncio
async def test_embed_http_error_carries_status() -> None:
    client = _client(lambda request: httpx.Response(404, text="model not found"))

    with pytest.raises(UpstreamError) as excinfo:
        await client.embed(["a"], model="missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.operation == "embed"
    assert "model not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_embed_connection_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError) as excinfo:
        await _client(handler).embed(["a"], model="m")

    assert excinfo.value.status_code is None
    assert "unreachable" in str(excinfo.value)


@pytest.mark.asyncio
async def test_embed_invalid_json() -> None:
    client = _client(lambda request: httpx.Response(200, content=b"<html>"))

    with pytest.raises(UpstreamError):
        await client.embed(["a"], model="m")


@pytest.mark.asyncio
async def test_generate_accumulates_streamed_chunks() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_ndjson(
                {"response": "Par", "done": False},
                {"response": "is.", "done": False},
                {"response": "", "done": True},
            ),
        )

    text = await _client(handler).generate("prompt", model="llama3.2:1b")

    assert text == "Paris."
    assert seen["body"] == {"model": "llama3.2:1b", "prompt": "prompt", "stream": True}


@pytest.mark.asyncio
async def test_generate_single_object_response() -> None:
    client = _client(
        lambda request: httpx.Response(200, content=_ndjson({"response": "Hi", "done": True}))
    )

    assert await client.generate("p", model="m", stream=False) == "Hi"


@pytest.mark.asyncio
async def test_generate_error_message_in_stream() -> None:
    client = _client(
        lambda request: httpx.Response(
            200,
            content=_ndjson({"response": "partial", "done": False}, {"error": "out of memory"}),
        )
    )

    with pytest.raises(UpstreamError) as excinfo:
        await client.generate("p", model="m")

    assert "out of memory" in str(excinfo.value)


@pytest.mark.asyncio
async def test_generate_error_status() -> None:
    client = _client(lambda request: httpx.Response(500, text="internal failure"))

    with pytest.raises(UpstreamError) as excinfo:
        await client.generate("p", model="m")

    assert excinfo.value.status_code == 500
    assert "internal failure" in str(excinfo.value)


@pytest.mark.asyncio
async def test_generate_invalid_stream_line() -> None:
    client = _client(lambda request: httpx.Response(200, content=b"not-json\n"))

    with pytest.raises(UpstreamError):
        await client.generate("p", model="m")


@pytest.mark.asyncio
async def test_list_models() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.2:1b"}, {"name": "x"}]})

    assert await _client(handler).list_models() == ["llama3.2:1b", "x"]


@pytest.mark.asyncio
async def test_ollama_backends_delegate_to_client() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/api/embed":
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2] for _ in body["input"]]})
        return httpx.Response(200, content=_ndjson({"response": body["model"], "done": True}))

    client = _client(handler)
    embedder = OllamaEmbedder(client, "embed-model")
    generator = OllamaGenerator(client, "default-chat")

    assert await embedder.embed("hello") == [0.1, 0.2]
    assert await embedder.embed_batch(["a", "b", "c"]) == [[0.1, 0.2]] * 3
    assert await embedder.embed_batch([]) == []
    assert await generator.generate("p") == "default-chat"
    assert await generator.generate("p", model="override") == "override"


def test_client_defaults_come_from_config() -> None:
    client = OllamaClient()

    assert client.base_url == config.OLLAMA_BASE_URL.rstrip("/")
    assert client.timeout == config.REQUEST_TIMEOUT
