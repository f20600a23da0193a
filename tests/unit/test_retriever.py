"""Unit tests for retrieval and answer generation."""
from typing import Optional

import pytest

from corpusqa import config
from corpusqa.errors import IndexNotAvailableError, UpstreamError, ValidationError
from corpusqa.rag.backends import EchoGenerator
from corpusqa.rag.retriever import PROMPT_HEADER, AskResult, Retriever, assemble_prompt
from corpusqa.rag.store import SearchResult, VectorIndex
from tests.conftest import FailingEmbedder, FixedEmbedder, make_record


class BrokenGenerator:
    default_model = "broken"

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        raise UpstreamError("generation backend down", operation="generate")


def test_assemble_prompt_layout() -> None:
    results = [
        SearchResult(record=make_record("a", [1.0], text="Paris is the capital."), score=0.91234),
        SearchResult(record=make_record("b", [1.0], text="France is in Europe."), score=0.5),
    ]

    prompt = assemble_prompt("What is the capital?", results)

    assert prompt == (
        PROMPT_HEADER
        + "CONTEXT:\n"
        + "[1] (score=0.9123) Paris is the capital.\n\n"
        + "[2] (score=0.5000) France is in Europe.\n\n"
        + "QUESTION: What is the capital?\n"
        + "ANSWER:\n"
    )


def test_assemble_prompt_without_results_keeps_sections() -> None:
    prompt = assemble_prompt("anything?", [])

    assert prompt.endswith("CONTEXT:\nQUESTION: anything?\nANSWER:\n")


@pytest.mark.asyncio
async def test_retrieve_ranks_by_similarity(three_vector_index: VectorIndex) -> None:
    embedder = FixedEmbedder({"east": [1.0, 0.0, 0.0]})
    retriever = Retriever(three_vector_index, embedder, top_k=2)

    results = await retriever.retrieve("east")

    assert [r.record.id for r in results] == ["x", "xy"]
    assert embedder.calls == ["east"]


@pytest.mark.asyncio
async def test_retrieve_top_k_override(three_vector_index: VectorIndex) -> None:
    retriever = Retriever(three_vector_index, FixedEmbedder({"q": [0.0, 1.0, 0.0]}), top_k=1)

    assert len(await retriever.retrieve("q")) == 1
    assert len(await retriever.retrieve("q", top_k=3)) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   "])
async def test_retrieve_rejects_empty_query(three_vector_index: VectorIndex, query: str) -> None:
    embedder = FixedEmbedder({})
    retriever = Retriever(three_vector_index, embedder)

    with pytest.raises(ValidationError):
        await retriever.retrieve(query)
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_retrieve_rejects_non_positive_top_k(three_vector_index: VectorIndex) -> None:
    retriever = Retriever(three_vector_index, FixedEmbedder({"q": [1.0, 0.0, 0.0]}))

    with pytest.raises(ValidationError):
        await retriever.retrieve("q", top_k=0)


@pytest.mark.asyncio
async def test_ask_builds_prompt_in_rank_order_and_trims_answer(
    three_vector_index: VectorIndex,
) -> None:
    generator = EchoGenerator(reply="  Mostly east.  \n", default_model="chat")
    retriever = Retriever(
        three_vector_index, FixedEmbedder({"Which way?": [1.0, 0.0, 0.0]}), generator, top_k=2
    )

    result = await retriever.ask("Which way?")

    assert result.answer == "Mostly east."
    assert [r.record.id for r in result.retrieved] == ["x", "xy"]
    prompt, model = generator.calls[0]
    assert model == "chat"
    assert prompt == result.prompt
    assert prompt.index("text of x") < prompt.index("text of xy")
    assert "[1] (score=1.0000) text of x\n\n" in prompt
    assert "[2] (score=0.7071) text of xy\n\n" in prompt
    assert prompt.endswith("QUESTION: Which way?\nANSWER:\n")


@pytest.mark.asyncio
async def test_ask_uses_requested_generation_model(three_vector_index: VectorIndex) -> None:
    generator = EchoGenerator(reply="ok", default_model="chat")
    retriever = Retriever(three_vector_index, FixedEmbedder({"q": [1.0, 0.0, 0.0]}), generator)

    await retriever.ask("q", generation_model="other-model")

    assert generator.calls[0][1] == "other-model"


@pytest.mark.asyncio
async def test_ask_on_empty_index_still_prompts_without_context() -> None:
    generator = EchoGenerator(reply="I don't know.")
    retriever = Retriever(VectorIndex(), FixedEmbedder({"q": [1.0, 0.0]}), generator)

    result = await retriever.ask("q")

    assert result.retrieved == []
    assert result.answer == "I don't know."
    assert "CONTEXT:\nQUESTION: q\n" in generator.calls[0][0]


@pytest.mark.asyncio
async def test_embedding_failure_propagates_before_generation(
    three_vector_index: VectorIndex,
) -> None:
    generator = EchoGenerator(reply="unused")
    retriever = Retriever(three_vector_index, FailingEmbedder(), generator)

    with pytest.raises(UpstreamError):
        await retriever.ask("q")
    assert generator.calls == []


@pytest.mark.asyncio
async def test_generation_failure_propagates(three_vector_index: VectorIndex) -> None:
    retriever = Retriever(
        three_vector_index, FixedEmbedder({"q": [1.0, 0.0, 0.0]}), BrokenGenerator()
    )

    with pytest.raises(UpstreamError) as excinfo:
        await retriever.ask("q")
    assert excinfo.value.operation == "generate"


@pytest.mark.asyncio
async def test_ask_without_generator_is_rejected(three_vector_index: VectorIndex) -> None:
    retriever = Retriever(three_vector_index, FixedEmbedder({"q": [1.0, 0.0, 0.0]}))

    with pytest.raises(ValidationError):
        await retriever.ask("q")


def test_ask_result_to_dict(three_vector_index: VectorIndex) -> None:
    record = three_vector_index.records[0]
    record.metadata = {"source_path": "notes/a.txt"}
    result = AskResult(answer="yes", retrieved=[SearchResult(record, 0.1234567)], prompt="p")

    data = result.to_dict()

    assert data["answer"] == "yes"
    assert data["retrieved"] == [
        {
            "rank": 1,
            "id": "x",
            "source": "src",
            "source_path": "notes/a.txt",
            "score": 0.123457,
            "text": "text of x",
        }
    ]


def test_from_snapshot_requires_built_index(tmp_path) -> None:
    with pytest.raises(IndexNotAvailableError):
        Retriever.from_snapshot(tmp_path / "index.json", FixedEmbedder({}))


@pytest.mark.asyncio
async def test_from_snapshot_loads_saved_index(tmp_path, three_vector_index: VectorIndex) -> None:
    path = tmp_path / "index.json"
    three_vector_index.save(path)

    retriever = Retriever.from_snapshot(path, FixedEmbedder({"q": [0.0, 1.0, 0.0]}))
    results = await retriever.retrieve("q", top_k=1)

    assert results[0].record.id == "y"


def test_retriever_default_top_k_comes_from_config(three_vector_index: VectorIndex) -> None:
    retriever = Retriever(three_vector_index, FixedEmbedder({"q": [1.0, 0.0, 0.0]}))

    assert retriever.top_k == config.RETRIEVAL_TOP_K
