"""Text chunking with overlap for the RAG pipeline.

Implements character-based chunking (with an optional word granularity) to
avoid tokenizer dependencies. Text is whitespace-normalized first so chunk
boundaries and identifiers are reproducible across runs.
"""
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from corpusqa import config
from corpusqa.errors import ValidationError

logger = structlog.get_logger()

UNIT_CHARS = "chars"
UNIT_WORDS = "words"

_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run (newlines included) to one space and trim."""
    return _WHITESPACE_RUN.sub(" ", text).strip()


def chunk_id(source_ref: str, text: str) -> str:
    """Deterministic identifier for a chunk of a given source."""
    return hashlib.sha256(f"{source_ref}\n{text}".encode("utf-8")).hexdigest()


@dataclass
class Chunk:
    """A bounded span of normalized source text.

    ``start``/``end`` are offsets into the normalized text, in the unit the
    chunker was configured with, such that the span holds exactly ``text``.
    """

    id: str
    index: int
    text: str
    start: int
    end: int
    source: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkOptions:
    """Window parameters, all expressed in ``unit``."""

    target_size: int = config.CHUNK_SIZE
    overlap: int = config.CHUNK_OVERLAP
    min_size: int = config.CHUNK_MIN_SIZE
    dedupe: bool = True
    unit: str = UNIT_CHARS
    lookback: int = config.CHUNK_LOOKBACK

    @property
    def stride(self) -> int:
        stride = self.target_size - self.overlap
        return stride if stride > 0 else self.target_size


class TextChunker:
    """Sliding-window text chunker with overlap and word-boundary snapping."""

    def __init__(self, options: Optional[ChunkOptions] = None):
        """Initialize the text chunker.

        Args:
            options: Window parameters (defaults from config)

        Raises:
            ValidationError: If the options cannot produce chunks
        """
        self.options = options or ChunkOptions()
        self._validate(self.options)

        if self.options.overlap >= self.options.target_size:
            logger.warning(
                "chunk_overlap_ignored",
                overlap=self.options.overlap,
                target_size=self.options.target_size,
            )

        logger.debug(
            "chunker_initialized",
            unit=self.options.unit,
            target_size=self.options.target_size,
            overlap=self.options.overlap,
            min_size=self.options.min_size,
        )

    @staticmethod
    def _validate(options: ChunkOptions) -> None:
        if options.unit not in (UNIT_CHARS, UNIT_WORDS):
            raise ValidationError(f"Unknown chunk unit: {options.unit!r}")
        if options.target_size <= 0:
            raise ValidationError(
                f"Chunk target size must be positive, got {options.target_size}"
            )
        if options.overlap < 0:
            raise ValidationError(f"Chunk overlap must be >= 0, got {options.overlap}")
        if options.min_size < 0:
            raise ValidationError(f"Chunk min size must be >= 0, got {options.min_size}")
        if options.lookback < 0:
            raise ValidationError(f"Chunk lookback must be >= 0, got {options.lookback}")

    def split(
        self,
        text: str,
        source_ref: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """Split text into overlapping chunks.

        Args:
            text: Raw text (whitespace is normalized here)
            source_ref: Path or content hash of the originating document
            metadata: Base metadata copied into every chunk

        Returns:
            Ordered list of Chunk objects
        """
        normalized = normalize_whitespace(text or "")
        if not normalized:
            return []

        if self.options.unit == UNIT_WORDS:
            units = normalized.split(" ")
            joiner = " "
        else:
            units = normalized
            joiner = ""

        opts = self.options
        total = len(units)
        stride = opts.stride
        seen = set()
        chunks: List[Chunk] = []
        start = 0

        while start < total:
            end = min(start + opts.target_size, total)
            if end < total and opts.unit == UNIT_CHARS:
                end = self._snap_to_boundary(normalized, start, end)

            window = units[start:end]
            content = joiner.join(window) if opts.unit == UNIT_WORDS else window
            stripped = content.strip()
            size = len(stripped.split(" ")) if opts.unit == UNIT_WORDS else len(stripped)

            if not stripped or size < opts.min_size:
                logger.debug(
                    "chunk_below_min_size",
                    source=source_ref,
                    offset=start,
                    size=size,
                    min_size=opts.min_size,
                )
                break

            cid = chunk_id(source_ref, stripped)
            if opts.dedupe and cid in seen:
                logger.debug("duplicate_chunk_skipped", source=source_ref, offset=start)
            else:
                seen.add(cid)
                lead = len(content) - len(content.lstrip()) if opts.unit == UNIT_CHARS else 0
                chunks.append(
                    Chunk(
                        id=cid,
                        index=len(chunks),
                        text=stripped,
                        start=start + lead,
                        end=start + lead + len(stripped) if opts.unit == UNIT_CHARS else end,
                        source=source_ref,
                        metadata=dict(metadata or {}),
                    )
                )

            if end >= total:
                break

            # A deep boundary cut must not open a gap before the next window
            start = min(start + stride, end)
            # Windows never open on a separator space
            if opts.unit == UNIT_CHARS and normalized[start].isspace():
                start += 1

        if chunks:
            logger.debug(
                "text_chunked",
                source=source_ref,
                text_length=total,
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.text) for c in chunks) // len(chunks),
            )

        return chunks

    def _snap_to_boundary(self, text: str, start: int, end: int) -> int:
        """Move a window end back to the nearest whitespace.

        Args:
            text: Normalized text
            start: Window start offset
            end: Raw window end offset (strictly inside the text)

        Returns:
            Adjusted end offset, or the raw offset if no whitespace lies
            within the lookback distance
        """
        if text[end].isspace() or text[end - 1].isspace():
            return end

        floor = max(start, end - self.options.lookback)
        for i in range(end, floor, -1):
            if text[i - 1].isspace():
                return i
        return end

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics (sizes in characters)
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.options.overlap,
            "unit": self.options.unit,
        }
