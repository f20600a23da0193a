"""In-memory vector index with whole-snapshot JSON persistence.

Handles:
- Dimension tracking (first record fixes the index dimension)
- Cosine-similarity search behind a pluggable searcher
- Atomic snapshot save and validated load
"""
import json
import math
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import numpy as np
import structlog

from corpusqa.errors import (
    DimensionMismatchError,
    IndexNotAvailableError,
    SnapshotParseError,
    ValidationError,
)
from corpusqa.rag.chunker import Chunk

logger = structlog.get_logger()

SNAPSHOT_FORMAT_VERSION = 1


@dataclass
class EmbeddedChunk:
    """A chunk together with its embedding vector."""

    id: str
    index: int
    text: str
    source: str
    embedding: List[float]
    start: int = 0
    end: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk, embedding: Sequence[float]) -> "EmbeddedChunk":
        return cls(
            id=chunk.id,
            index=chunk.index,
            text=chunk.text,
            source=chunk.source,
            embedding=[float(v) for v in embedding],
            start=chunk.start,
            end=chunk.end,
            metadata=dict(chunk.metadata),
        )

    @property
    def dimension(self) -> int:
        return len(self.embedding)


@dataclass
class SearchResult:
    """A stored record and its similarity to the query."""

    record: EmbeddedChunk
    score: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Cosine similarity of two vectors.

    Returns:
        Similarity in [-1, 1], or None when the comparison is undefined
        (dimension mismatch, empty or zero-norm vector)
    """
    if len(a) != len(b) or len(a) == 0:
        return None
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return None
    return float(np.dot(va, vb) / (norm_a * norm_b))


class Searcher(Protocol):
    """Ranking strategy over an ordered record list."""

    def search(
        self, records: Sequence[EmbeddedChunk], query: Sequence[float], top_k: int
    ) -> List[SearchResult]:
        ...


class BruteForceSearcher:
    """Exact O(N·D) cosine ranking over every record.

    Records whose dimension differs from the query, and zero-norm vectors on
    either side, are skipped. Ties keep insertion order.
    """

    def search(
        self, records: Sequence[EmbeddedChunk], query: Sequence[float], top_k: int
    ) -> List[SearchResult]:
        q = np.asarray(query, dtype=np.float64)
        q_norm = float(np.linalg.norm(q)) if q.size else 0.0
        if q_norm == 0.0:
            logger.warning("zero_norm_query_vector", dimension=int(q.size))
            return []

        candidates = [r for r in records if r.dimension == q.size]
        skipped = len(records) - len(candidates)
        if skipped:
            logger.warning(
                "records_skipped_dimension_mismatch",
                skipped=skipped,
                query_dimension=int(q.size),
            )
        if not candidates:
            return []

        matrix = np.asarray([r.embedding for r in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        valid = norms > 0.0
        scores = np.zeros(len(candidates), dtype=np.float64)
        scores[valid] = (matrix[valid] @ q) / (norms[valid] * q_norm)

        positions = np.flatnonzero(valid)
        # Stable sort on negated scores keeps insertion order for ties
        order = positions[np.argsort(-scores[positions], kind="stable")]

        return [
            SearchResult(record=candidates[i], score=float(scores[i]))
            for i in order[:top_k]
        ]


class VectorIndex:
    """Append-only collection of embedded chunks with similarity search."""

    def __init__(
        self,
        embedding_model: Optional[str] = None,
        searcher: Optional[Searcher] = None,
    ):
        """Initialize an empty index.

        Args:
            embedding_model: Name of the model that produced the vectors
            searcher: Ranking strategy (default: brute-force cosine)
        """
        self.embedding_model = embedding_model
        self.searcher = searcher or BruteForceSearcher()
        self.records: List[EmbeddedChunk] = []
        self.dimension: Optional[int] = None

    def __len__(self) -> int:
        return len(self.records)

    @property
    def count(self) -> int:
        return len(self.records)

    def add(self, record: EmbeddedChunk) -> None:
        """Append a record.

        Raises:
            ValidationError: If the embedding is empty or has non-finite components
            DimensionMismatchError: If the record disagrees with the index dimension
        """
        if not record.embedding:
            raise ValidationError(f"Record {record.id} has an empty embedding")
        # Snapshots are strict JSON, so NaN/inf could be saved but never loaded
        if not all(math.isfinite(v) for v in record.embedding):
            raise ValidationError(f"Record {record.id} has a non-finite embedding component")

        if self.dimension is None:
            self.dimension = record.dimension
        elif record.dimension != self.dimension:
            raise DimensionMismatchError(
                self.dimension,
                record.dimension,
                context=f"record {record.id} from {record.source}",
            )

        self.records.append(record)

    def search(self, query_vector: Sequence[float], top_k: int) -> List[SearchResult]:
        """Rank stored records by cosine similarity to the query.

        Args:
            query_vector: Query embedding
            top_k: Maximum number of results (must be positive)

        Returns:
            Up to ``min(top_k, count)`` results, best first

        Raises:
            ValidationError: If top_k is not positive
        """
        if top_k is None or top_k <= 0:
            raise ValidationError(f"top_k must be positive, got {top_k}")

        if not self.records:
            logger.info("search_on_empty_index")
            return []

        results = self.searcher.search(self.records, query_vector, top_k)

        logger.info(
            "vector_search_completed",
            top_k=top_k,
            results_found=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "embedding_model": self.embedding_model,
            "dimension": self.dimension,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "records": [asdict(r) for r in self.records],
        }

    def save(self, path: Path) -> None:
        """Write the full index as one snapshot, replacing any prior one.

        The snapshot is written to a temporary file next to ``path`` and
        renamed into place, so readers never observe a partial file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_snapshot(), f, allow_nan=False)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info(
            "index_saved",
            index_path=str(path),
            record_count=len(self.records),
            dimension=self.dimension,
        )

    @classmethod
    def load(cls, path: Path, searcher: Optional[Searcher] = None) -> "VectorIndex":
        """Read a snapshot into memory.

        Raises:
            IndexNotAvailableError: If no snapshot exists at path
            SnapshotParseError: If the snapshot is structurally invalid
        """
        path = Path(path)
        if not path.exists():
            raise IndexNotAvailableError(f"Index not found: {path} (build the index first)")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SnapshotParseError(f"Failed to parse index {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("records"), list):
            raise SnapshotParseError(f"Index {path} has no record list")

        index = cls(embedding_model=data.get("embedding_model"), searcher=searcher)
        for position, raw in enumerate(data["records"]):
            try:
                index.add(cls._record_from_dict(raw, position, path))
            except (DimensionMismatchError, ValidationError) as e:
                raise SnapshotParseError(
                    f"Invalid record #{position} in index {path}: {e}"
                ) from e

        logger.info(
            "index_loaded",
            index_path=str(path),
            record_count=len(index.records),
            dimension=index.dimension,
            embedding_model=index.embedding_model,
        )

        return index

    @staticmethod
    def _record_from_dict(raw: Any, position: int, path: Path) -> EmbeddedChunk:
        try:
            embedding = [float(v) for v in raw["embedding"]]
            if not all(math.isfinite(v) for v in embedding):
                raise ValueError("non-finite embedding component")
            return EmbeddedChunk(
                id=str(raw["id"]),
                index=int(raw.get("index", position)),
                text=str(raw["text"]),
                source=str(raw.get("source", "")),
                embedding=embedding,
                start=int(raw.get("start", 0)),
                end=int(raw.get("end", 0)),
                metadata=dict(raw.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotParseError(
                f"Invalid record #{position} in index {path}: {e}"
            ) from e

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the index."""
        return {
            "record_count": len(self.records),
            "dimension": self.dimension,
            "embedding_model": self.embedding_model,
            "sources": len({r.source for r in self.records}),
        }
