"""Retriever and prompt assembly for question answering over an index.

Handles:
- Query embedding generation
- Vector search over a loaded index
- Deterministic prompt assembly
- Grounded generation
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import structlog

from corpusqa import config
from corpusqa.errors import ValidationError
from corpusqa.rag.backends import EmbeddingBackend, GenerationBackend
from corpusqa.rag.store import SearchResult, VectorIndex

logger = structlog.get_logger()

PROMPT_HEADER = (
    "You are a helpful assistant. Use the provided CONTEXT to answer the QUESTION. "
    "If the answer is not in the context, say you don't know.\n\n"
)


def serialize_results(results: List[SearchResult]) -> List[dict]:
    """JSON-ready view of ranked results."""
    return [
        {
            "rank": rank,
            "id": r.record.id,
            "source": r.record.source,
            "source_path": r.record.metadata.get("source_path"),
            "score": round(r.score, 6),
            "text": r.record.text,
        }
        for rank, r in enumerate(results, 1)
    ]


@dataclass
class AskResult:
    """Answer plus the evidence and prompt that produced it."""

    answer: str
    retrieved: List[SearchResult] = field(default_factory=list)
    prompt: str = ""

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "prompt": self.prompt,
            "retrieved": serialize_results(self.retrieved),
        }


def assemble_prompt(query: str, results: List[SearchResult]) -> str:
    """Render instructions, ranked context, the question and an answer cue.

    Args:
        query: User question
        results: Ranked search results, rendered in the given order

    Returns:
        Prompt text
    """
    parts = [PROMPT_HEADER, "CONTEXT:\n"]
    for rank, result in enumerate(results, 1):
        parts.append(f"[{rank}] (score={result.score:.4f}) {result.record.text}\n\n")
    parts.append(f"QUESTION: {query}\n")
    parts.append("ANSWER:\n")
    return "".join(parts)


class Retriever:
    """Semantic retriever and answer generator for one loaded index."""

    def __init__(
        self,
        index: VectorIndex,
        embedder: EmbeddingBackend,
        generator: Optional[GenerationBackend] = None,
        top_k: Optional[int] = None,
    ):
        """Initialize the retriever.

        Args:
            index: Loaded vector index (read-only for the session)
            embedder: Backend used to embed queries
            generator: Backend used to answer (required for ``ask``)
            top_k: Default number of results (default from config)
        """
        self.index = index
        self.embedder = embedder
        self.generator = generator
        self.top_k = top_k or config.RETRIEVAL_TOP_K

        if index.embedding_model and index.embedding_model != embedder.model_name:
            logger.warning(
                "embedding_model_differs_from_index",
                index_model=index.embedding_model,
                query_model=embedder.model_name,
            )

        logger.info(
            "retriever_initialized",
            record_count=index.count,
            embedding_model=embedder.model_name,
            top_k=self.top_k,
        )

    @classmethod
    def from_snapshot(
        cls,
        path: Path,
        embedder: EmbeddingBackend,
        generator: Optional[GenerationBackend] = None,
        top_k: Optional[int] = None,
    ) -> "Retriever":
        """Load an index snapshot once for a query session.

        Raises:
            IndexNotAvailableError: If the index has not been built
            SnapshotParseError: If the snapshot is invalid
        """
        return cls(VectorIndex.load(path), embedder, generator, top_k=top_k)

    async def retrieve(self, query: str, top_k: Optional[int] = None) -> List[SearchResult]:
        """Retrieve the chunks most similar to a query.

        Args:
            query: User query text
            top_k: Number of results to return (overrides default)

        Returns:
            List of SearchResult objects, best first

        Raises:
            ValidationError: If the query is empty or top_k is not positive
            UpstreamError: If the query cannot be embedded
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")

        top_k = self.top_k if top_k is None else top_k
        if top_k <= 0:
            raise ValidationError(f"top_k must be positive, got {top_k}")

        logger.info("retrieval_started", query_length=len(query), top_k=top_k)

        query_vector = await self.embedder.embed(query)

        logger.debug(
            "query_embedded",
            dimension=len(query_vector),
            model=self.embedder.model_name,
        )

        return self.index.search(query_vector, top_k)

    async def ask(
        self,
        query: str,
        top_k: Optional[int] = None,
        generation_model: Optional[str] = None,
    ) -> AskResult:
        """Answer a question grounded in the retrieved chunks.

        Args:
            query: User question
            top_k: Number of chunks to retrieve
            generation_model: Generation model name (backend default if None)

        Returns:
            AskResult with the trimmed answer, retrieved chunks and prompt

        Raises:
            ValidationError: If the query is empty or no generator is configured
            UpstreamError: If embedding or generation fails
        """
        if self.generator is None:
            raise ValidationError("Retriever has no generation backend configured")

        results = await self.retrieve(query, top_k=top_k)
        prompt = assemble_prompt(query, results)

        answer = await self.generator.generate(prompt, model=generation_model)

        logger.info(
            "ask_completed",
            query_length=len(query),
            results_used=len(results),
            prompt_length=len(prompt),
            answer_length=len(answer),
        )

        return AskResult(answer=answer.strip(), retrieved=results, prompt=prompt)
