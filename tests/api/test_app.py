"""HTTP API tests using Quart's test client and the offline backends."""
import pytest

from corpusqa.errors import (
    EncryptedSourceError,
    IndexNotAvailableError,
    NotFoundError,
    UpstreamError,
)
from corpusqa.main import create_app, status_for
from corpusqa.rag.backends import EchoGenerator, HashEmbedder
from corpusqa.service import CorpusService


@pytest.fixture
def service(settings) -> CorpusService:
    return CorpusService(
        settings, embedder=HashEmbedder(), generator=EchoGenerator(reply=" The Alps. ")
    )


@pytest.fixture
def client(service):
    return create_app(service).test_client()


def test_status_mapping() -> None:
    assert status_for(IndexNotAvailableError("x")) == 409
    assert status_for(NotFoundError("x")) == 404
    assert status_for(EncryptedSourceError("x")) == 415
    assert status_for(UpstreamError("x")) == 502


@pytest.mark.asyncio
async def test_health_endpoints(client) -> None:
    live = await client.get("/health/live")
    ready = await client.get("/health/ready")

    assert live.status_code == 200
    assert (await live.get_json()) == {"status": "alive"}
    assert ready.status_code == 200
    assert (await ready.get_json())["backend"] == "mock"


@pytest.mark.asyncio
async def test_full_model_lifecycle(client, corpus_dir) -> None:
    created = await client.post("/api/models", json={"name": "geo"})
    assert created.status_code == 201
    assert (await created.get_json())["name"] == "geo"

    early = await client.post("/api/models/geo/search", json={"query": "alps"})
    assert early.status_code == 409

    ingest = await client.post("/api/models/geo/ingest", json={"path": str(corpus_dir)})
    assert ingest.status_code == 200
    assert (await ingest.get_json())["stats"]["sources_ingested"] == 2

    build = await client.post("/api/models/geo/build")
    assert build.status_code == 200
    stats = (await build.get_json())["stats"]
    assert stats["embeddings_generated"] == stats["chunks_created"] > 0

    described = await (await client.get("/api/models/geo")).get_json()
    assert described["index_built"] is True
    assert described["sources"] == 2
    assert described["stats"]["embeddings"] == stats["embeddings_generated"]
    assert described["last_build"]["embedding_model"] == "hash-embedder"

    search = await client.post("/api/models/geo/search", json={"query": "Alps", "top_k": 2})
    assert search.status_code == 200
    results = (await search.get_json())["results"]
    assert 1 <= len(results) <= 2
    assert [r["rank"] for r in results] == list(range(1, len(results) + 1))
    assert results[0]["source_path"].endswith("mountains.md")

    ask = await client.post("/api/models/geo/ask", json={"query": "Which mountains?"})
    assert ask.status_code == 200
    answer = await ask.get_json()
    assert answer["answer"] == "The Alps."
    assert answer["prompt"].endswith("QUESTION: Which mountains?\nANSWER:\n")
    assert len(answer["retrieved"]) <= 3

    listed = await (await client.get("/api/models")).get_json()
    assert [m["name"] for m in listed["models"]] == ["geo"]


@pytest.mark.asyncio
async def test_model_creation_errors(client) -> None:
    await client.post("/api/models", json={"name": "geo"})

    duplicate = await client.post("/api/models", json={"name": "geo"})
    invalid = await client.post("/api/models", json={"name": "bad name!"})
    missing_field = await client.post("/api/models", json={})

    assert duplicate.status_code == 409
    assert (await duplicate.get_json())["error_type"] == "AlreadyExistsError"
    assert invalid.status_code == 400
    assert missing_field.status_code == 400
    assert (await missing_field.get_json())["details"][0]["field"] == "name"


@pytest.mark.asyncio
async def test_unknown_model_and_route(client) -> None:
    assert (await client.get("/api/models/ghost")).status_code == 404
    assert (await client.post("/api/models/ghost/build")).status_code == 404
    assert (await client.get("/nowhere")).status_code == 404


@pytest.mark.asyncio
async def test_build_without_sources_is_unprocessable(client) -> None:
    await client.post("/api/models", json={"name": "empty"})

    response = await client.post("/api/models/empty/build")

    assert response.status_code == 422
    assert (await response.get_json())["error_type"] == "EmptyCorpusError"


@pytest.mark.asyncio
async def test_ingest_missing_path(client, tmp_path) -> None:
    await client.post("/api/models", json={"name": "geo"})

    missing = await client.post(
        "/api/models/geo/ingest", json={"path": str(tmp_path / "absent")}
    )
    empty = await client.post("/api/models/geo/ingest", json={"path": ""})

    assert missing.status_code == 404
    assert empty.status_code == 400


@pytest.mark.asyncio
async def test_ingest_is_confined_to_ingest_root(settings, corpus_dir, tmp_path) -> None:
    service = CorpusService(
        settings.with_overrides(ingest_root=corpus_dir),
        embedder=HashEmbedder(),
        generator=EchoGenerator(),
    )
    client = create_app(service).test_client()
    await client.post("/api/models", json={"name": "geo"})

    relative = await client.post("/api/models/geo/ingest", json={"path": "rivers.txt"})
    absolute = await client.post(
        "/api/models/geo/ingest", json={"path": str(corpus_dir / "mountains.md")}
    )
    outside = await client.post("/api/models/geo/ingest", json={"path": str(tmp_path)})
    escaping = await client.post("/api/models/geo/ingest", json={"path": "../data"})

    assert relative.status_code == 200
    assert (await relative.get_json())["stats"]["sources_ingested"] == 1
    assert absolute.status_code == 200
    assert outside.status_code == 400
    assert escaping.status_code == 400
    # Rejected requests leave the last accepted manifest in place
    assert len(service.store.get_sources("geo")) == 1


def test_check_ingest_path_without_root_passes_through(service, tmp_path) -> None:
    assert service.settings.ingest_root is None
    assert service.check_ingest_path(str(tmp_path / "x")) == tmp_path / "x"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"query": ""},
        {"query": "ok", "top_k": 0},
        {"top_k": 2},
        {"query": "x" * 2001},
    ],
)
async def test_search_request_validation(client, body) -> None:
    await client.post("/api/models", json={"name": "geo"})

    response = await client.post("/api/models/geo/search", json=body)

    assert response.status_code == 400
