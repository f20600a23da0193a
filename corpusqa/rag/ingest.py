"""Ingest and build pipeline for a model's index.

Orchestrates:
- Source discovery and text extraction into the model's workspace
- Text chunking
- Bounded-concurrency embedding generation
- A single full-replace snapshot save at the end of a build
"""
import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from corpusqa.config import Settings
from corpusqa.db import SourceEntry, WorkspaceStore
from corpusqa.errors import (
    DimensionMismatchError,
    EmptyCorpusError,
    UnsupportedInputError,
    UpstreamError,
    ValidationError,
)
from corpusqa.rag.backends import EmbeddingBackend
from corpusqa.rag.chunker import Chunk, ChunkOptions, TextChunker
from corpusqa.rag.extract import extract_text, walk_paths
from corpusqa.rag.store import EmbeddedChunk, VectorIndex

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, str], None]


class IngestPipeline:
    """Pipeline for ingesting sources and building a model's vector index."""

    def __init__(
        self,
        store: WorkspaceStore,
        embedder: EmbeddingBackend,
        settings: Settings,
        chunker: Optional[TextChunker] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            store: Workspace store holding models and manifests
            embedder: Embedding backend used during builds
            settings: Explicit configuration (chunk sizes, concurrency)
            chunker: Chunker override (default built from settings)
        """
        self.store = store
        self.embedder = embedder
        self.settings = settings
        self.chunker = chunker or TextChunker(
            ChunkOptions(
                target_size=settings.chunk_size,
                overlap=settings.chunk_overlap,
                min_size=settings.chunk_min_size,
                lookback=settings.chunk_lookback,
            )
        )
        self.concurrency = max(1, settings.embed_concurrency)

        logger.info(
            "ingest_pipeline_initialized",
            data_dir=str(store.data_dir),
            embedding_model=embedder.model_name,
            chunk_size=self.chunker.options.target_size,
            chunk_overlap=self.chunker.options.overlap,
            embed_concurrency=self.concurrency,
        )

    def ingest_sources(
        self,
        model: str,
        path: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Extract every supported file under a path into the model's manifest.

        Unsupported, encrypted or unreadable files are skipped; ingestion
        continues with the remaining files. The manifest is replaced.

        Args:
            model: Model name
            path: File or directory to ingest
            progress_callback: Optional callback(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics

        Raises:
            NotFoundError: If the model or the path does not exist
            ValidationError: If no path was given
        """
        self.store.get_model(model)
        files = walk_paths(path)

        stats = {"sources_ingested": 0, "sources_failed": 0, "sources_duplicate": 0}
        entries: List[SourceEntry] = []
        seen_hashes = set()
        sources_dir = self.store.sources_dir(model)
        sources_dir.mkdir(parents=True, exist_ok=True)

        for idx, file_path in enumerate(files, 1):
            if progress_callback:
                progress_callback(idx, len(files), str(file_path))

            try:
                extracted = extract_text(file_path)
            except (UnsupportedInputError, OSError) as e:
                logger.warning(
                    "source_skipped",
                    path=str(file_path),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                stats["sources_failed"] += 1
                continue

            if extracted.content_hash in seen_hashes:
                logger.info("duplicate_source_skipped", path=str(file_path))
                stats["sources_duplicate"] += 1
                continue
            seen_hashes.add(extracted.content_hash)

            text_path = sources_dir / f"{extracted.content_hash}.txt"
            text_path.write_text(extracted.text, encoding="utf-8")

            entries.append(
                SourceEntry(
                    ordinal=len(entries),
                    source_path=str(file_path),
                    kind=extracted.kind,
                    content_hash=extracted.content_hash,
                    text_path=str(text_path),
                    metadata=extracted.metadata,
                )
            )
            stats["sources_ingested"] += 1

        self.store.replace_sources(model, entries)

        logger.info("ingest_completed", model=model, stats=stats)

        return stats

    async def embed_chunks(self, chunks: List[Chunk], source_path: str) -> List[List[float]]:
        """Embed chunks concurrently, bounded by the worker limit.

        Results are returned in chunk order regardless of completion order.
        On the first failure the remaining requests are cancelled.

        Raises:
            UpstreamError: Naming the failing source and chunk index
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def embed_one(chunk: Chunk) -> List[float]:
            async with semaphore:
                try:
                    return await self.embedder.embed(chunk.text)
                except UpstreamError as e:
                    logger.error(
                        "chunk_embedding_failed",
                        source=source_path,
                        chunk_index=chunk.index,
                        error=str(e),
                    )
                    raise UpstreamError(
                        f"Embedding failed for chunk {chunk.index} of {source_path}: {e}",
                        backend=e.backend,
                        operation="embed",
                        status_code=e.status_code,
                    ) from e

        tasks = [asyncio.ensure_future(embed_one(chunk)) for chunk in chunks]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def build_index(
        self,
        model: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Chunk, embed and index every source in the model's manifest.

        The index is accumulated in memory and saved once at the end, so a
        failed or cancelled build leaves any previous snapshot untouched.

        Args:
            model: Model name
            progress_callback: Optional callback(current, total, source_path)

        Returns:
            Dictionary with build statistics

        Raises:
            NotFoundError: If the model does not exist
            EmptyCorpusError: If there are no sources or no usable chunks
            UpstreamError: On the first embedding failure
        """
        self.store.get_model(model)
        sources = self.store.get_sources(model)
        if not sources:
            raise EmptyCorpusError(f"No sources to index for model {model}; ingest first")

        logger.info("build_started", model=model, source_count=len(sources))

        stats = {
            "sources_processed": 0,
            "sources_failed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
            "embeddings_skipped": 0,
        }
        index = VectorIndex(embedding_model=self.embedder.model_name)

        for idx, entry in enumerate(sources, 1):
            if progress_callback:
                progress_callback(idx, len(sources), entry.source_path)

            try:
                text = Path(entry.text_path).read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("source_text_unreadable", path=entry.text_path, error=str(e))
                stats["sources_failed"] += 1
                continue

            chunks = self.chunker.split(
                text,
                source_ref=entry.content_hash,
                metadata={"source_path": entry.source_path, "kind": entry.kind},
            )
            for chunk in chunks:
                chunk.metadata["total_chunks"] = len(chunks)

            if not chunks:
                logger.warning("no_chunks_created", path=entry.source_path)
                stats["sources_processed"] += 1
                continue

            embeddings = await self.embed_chunks(chunks, entry.source_path)

            for chunk, embedding in zip(chunks, embeddings):
                try:
                    index.add(EmbeddedChunk.from_chunk(chunk, embedding))
                except (DimensionMismatchError, ValidationError) as e:
                    logger.error(
                        "chunk_embedding_rejected",
                        source=entry.source_path,
                        chunk_index=chunk.index,
                        error=str(e),
                    )
                    stats["embeddings_skipped"] += 1
                    continue
                stats["embeddings_generated"] += 1

            stats["chunks_created"] += len(chunks)
            stats["sources_processed"] += 1

            logger.info(
                "source_indexed",
                path=entry.source_path,
                chunks_created=len(chunks),
                **self.chunker.get_chunk_stats(chunks),
            )

        if index.count == 0:
            raise EmptyCorpusError(f"Build of model {model} produced no usable chunks")

        index.save(self.store.index_path(model))

        self.store.update_stats(
            model,
            chunk_count=stats["chunks_created"],
            embedding_count=index.count,
        )
        self.store.insert_index_run(
            model,
            embedding_model=self.embedder.model_name,
            embedding_dimension=index.dimension,
            chunk_size=self.chunker.options.target_size,
            chunk_overlap=self.chunker.options.overlap,
            total_chunks=stats["chunks_created"],
            total_sources=stats["sources_processed"],
            metadata={
                "sources_failed": stats["sources_failed"],
                "embeddings_skipped": stats["embeddings_skipped"],
            },
        )

        logger.info("build_completed", model=model, stats=stats)

        return stats
