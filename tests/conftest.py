"""Pytest configuration and fixtures shared by unit and API tests."""
from typing import Dict, List, Optional, Sequence

import pytest

from corpusqa.config import Settings
from corpusqa.db import WorkspaceStore
from corpusqa.errors import UpstreamError
from corpusqa.rag.store import EmbeddedChunk, VectorIndex


class FixedEmbedder:
    """Embedder returning preset vectors for known texts."""

    def __init__(self, vectors: Dict[str, List[float]], model_name: str = "fixed"):
        self.vectors = vectors
        self.model_name = model_name
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return list(self.vectors[text])

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


class FailingEmbedder:
    """Embedder that fails on the n-th call (1-based)."""

    def __init__(self, fail_on: int = 1, model_name: str = "failing"):
        self.fail_on = fail_on
        self.model_name = model_name
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.calls >= self.fail_on:
            raise UpstreamError("connection refused", operation="embed")
        return [1.0, 0.0, 0.0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


def make_record(record_id: str, vector: Sequence[float], text: Optional[str] = None) -> EmbeddedChunk:
    return EmbeddedChunk(
        id=record_id,
        index=0,
        text=text or f"text of {record_id}",
        source="src",
        embedding=list(vector),
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temporary data directory with small chunks."""
    return Settings(
        data_dir=tmp_path / "data",
        ingest_root=None,
        chunk_size=80,
        chunk_overlap=20,
        chunk_min_size=10,
        chunk_lookback=30,
        retrieval_top_k=3,
        embed_concurrency=3,
        chat_model="test-chat",
        embedding_model="test-embed",
    )


@pytest.fixture
def store(settings) -> WorkspaceStore:
    return WorkspaceStore(settings.data_dir)


@pytest.fixture
def three_vector_index() -> VectorIndex:
    index = VectorIndex(embedding_model="fixed")
    index.add(make_record("x", [1.0, 0.0, 0.0]))
    index.add(make_record("y", [0.0, 1.0, 0.0]))
    index.add(make_record("xy", [0.7, 0.7, 0.0]))
    return index


@pytest.fixture
def corpus_dir(tmp_path):
    """A small directory of sources, including one unsupported file."""
    root = tmp_path / "corpus"
    root.mkdir()
    (root / "rivers.txt").write_text(
        "The Danube flows through ten countries.\r\n"
        "It empties into the Black Sea after a long journey across central Europe.\n",
        encoding="utf-8",
    )
    (root / "mountains.md").write_text(
        "---\ntitle: Mountains\ntags: [alps]\n---\n"
        "# Alps\n\nThe Alps stretch across eight countries and include Mont Blanc, "
        "the highest summit in western Europe.\n",
        encoding="utf-8",
    )
    (root / "image.bin").write_bytes(b"\x00\x01\x02")
    hidden = root / ".cache"
    hidden.mkdir()
    (hidden / "ignored.txt").write_text("should never be ingested", encoding="utf-8")
    return root
