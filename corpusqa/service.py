"""Application service wiring the store, pipeline and retrievers together.

One instance is built from explicit ``Settings`` and shared by the CLI and
the HTTP app. Loaded indices are cached per model for the lifetime of the
service and dropped whenever that model is rebuilt.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from corpusqa.config import Settings
from corpusqa.db import ModelMeta, WorkspaceStore
from corpusqa.errors import ValidationError
from corpusqa.rag.backends import EmbeddingBackend, GenerationBackend, build_backends
from corpusqa.rag.ingest import IngestPipeline, ProgressCallback
from corpusqa.rag.retriever import AskResult, Retriever
from corpusqa.rag.store import SearchResult

logger = structlog.get_logger()


class CorpusService:
    """Facade over model bookkeeping, builds and queries."""

    def __init__(
        self,
        settings: Settings,
        embedder: Optional[EmbeddingBackend] = None,
        generator: Optional[GenerationBackend] = None,
        mock: bool = False,
    ):
        """Initialize the service.

        Args:
            settings: Explicit configuration
            embedder: Embedding backend (built from settings if None)
            generator: Generation backend (built from settings if None)
            mock: Build the deterministic offline backends
        """
        self.settings = settings
        if embedder is None or generator is None:
            default_embedder, default_generator = build_backends(settings, mock=mock)
            embedder = embedder or default_embedder
            generator = generator or default_generator
        self.embedder = embedder
        self.generator = generator
        self.store = WorkspaceStore(settings.data_dir)
        self.pipeline = IngestPipeline(self.store, embedder, settings)
        self._retrievers: Dict[str, Retriever] = {}

    def create_model(self, name: str) -> ModelMeta:
        return self.store.create_model(name)

    def get_model(self, name: str) -> ModelMeta:
        return self.store.get_model(name)

    def list_models(self) -> List[ModelMeta]:
        return self.store.list_models()

    def describe_model(self, name: str) -> Dict[str, Any]:
        """Model metadata plus manifest size and the latest build record."""
        meta = self.store.get_model(name)
        info = meta.to_dict()
        info["sources"] = len(self.store.get_sources(name))
        info["index_built"] = self.store.index_path(name).exists()
        info["last_build"] = self.store.get_latest_index_run(name)
        return info

    def check_ingest_path(self, path: str) -> Path:
        """Resolve a requested source path against the configured ingest root.

        Relative paths are taken from the root. Without a root any path is
        accepted unchanged.

        Raises:
            ValidationError: If the path escapes the ingest root
        """
        root = self.settings.ingest_root
        if root is None:
            return Path(path)

        root = Path(root).resolve()
        resolved = (root / path).resolve()
        if not resolved.is_relative_to(root):
            logger.warning("ingest_path_rejected", path=str(path), ingest_root=str(root))
            raise ValidationError(f"Source path is outside the ingest root: {path}")
        return resolved

    def ingest(
        self, name: str, path: Path, progress_callback: Optional[ProgressCallback] = None
    ) -> Dict[str, Any]:
        return self.pipeline.ingest_sources(name, path, progress_callback=progress_callback)

    async def build(
        self, name: str, progress_callback: Optional[ProgressCallback] = None
    ) -> Dict[str, Any]:
        stats = await self.pipeline.build_index(name, progress_callback=progress_callback)
        self._retrievers.pop(name, None)
        return stats

    def retriever(self, name: str) -> Retriever:
        """Return the retriever for a model, loading its index on first use.

        Raises:
            NotFoundError: If the model does not exist
            IndexNotAvailableError: If the model has no built index
        """
        if name not in self._retrievers:
            self.store.get_model(name)
            self._retrievers[name] = Retriever.from_snapshot(
                self.store.index_path(name),
                self.embedder,
                self.generator,
                top_k=self.settings.retrieval_top_k,
            )
            logger.info("model_index_loaded", model=name)
        return self._retrievers[name]

    async def search(
        self, name: str, query: str, top_k: Optional[int] = None
    ) -> List[SearchResult]:
        return await self.retriever(name).retrieve(query, top_k=top_k)

    async def ask(
        self,
        name: str,
        query: str,
        top_k: Optional[int] = None,
        generation_model: Optional[str] = None,
    ) -> AskResult:
        return await self.retriever(name).ask(
            query, top_k=top_k, generation_model=generation_model
        )
