"""Application configuration with sensible defaults.

Module-level constants are read from the environment once. Pipeline
components never read them directly; they receive a ``Settings`` instance
at construction time.
"""
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

# Environment variable -> default, the single source of every default below
DEFAULTS = {
    "CORPUSQA_DATA_DIR": ".corpusqa",
    "CORPUSQA_INGEST_ROOT": "",
    "OLLAMA_BASE_URL": "http://localhost:11434",
    "CHAT_MODEL": "llama3.2:1b",
    "EMBEDDING_MODEL": "nomic-embed-text",
    "REQUEST_TIMEOUT": "60.0",
    "CHUNK_SIZE": "900",
    "CHUNK_OVERLAP": "180",
    "CHUNK_MIN_SIZE": "120",
    "CHUNK_LOOKBACK": "80",
    "RETRIEVAL_TOP_K": "3",
    "EMBED_CONCURRENCY": "4",
    "LOG_LEVEL": "INFO",
}


def env(name: str) -> str:
    return os.getenv(name, DEFAULTS[name])


def _optional_path(value: str) -> Optional[Path]:
    return Path(value) if value else None


# Paths
DATA_DIR = Path(env("CORPUSQA_DATA_DIR"))
INGEST_ROOT = _optional_path(env("CORPUSQA_INGEST_ROOT"))

# Ollama configuration
OLLAMA_BASE_URL = env("OLLAMA_BASE_URL")
CHAT_MODEL = env("CHAT_MODEL")
EMBEDDING_MODEL = env("EMBEDDING_MODEL")
REQUEST_TIMEOUT = float(env("REQUEST_TIMEOUT"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(env("CHUNK_SIZE"))
CHUNK_OVERLAP = int(env("CHUNK_OVERLAP"))
CHUNK_MIN_SIZE = int(env("CHUNK_MIN_SIZE"))
CHUNK_LOOKBACK = int(env("CHUNK_LOOKBACK"))
RETRIEVAL_TOP_K = int(env("RETRIEVAL_TOP_K"))
EMBED_CONCURRENCY = int(env("EMBED_CONCURRENCY"))

# Logging
LOG_LEVEL = env("LOG_LEVEL")


@dataclass(frozen=True)
class Settings:
    """Explicit configuration passed into pipeline construction.

    ``ingest_root``, when set, is the only directory tree the HTTP API may
    ingest from.
    """

    data_dir: Path = field(default_factory=lambda: DATA_DIR)
    ingest_root: Optional[Path] = INGEST_ROOT
    ollama_base_url: str = OLLAMA_BASE_URL
    chat_model: str = CHAT_MODEL
    embedding_model: str = EMBEDDING_MODEL
    request_timeout: float = REQUEST_TIMEOUT
    chunk_size: int = CHUNK_SIZE
    chunk_overlap: int = CHUNK_OVERLAP
    chunk_min_size: int = CHUNK_MIN_SIZE
    chunk_lookback: int = CHUNK_LOOKBACK
    retrieval_top_k: int = RETRIEVAL_TOP_K
    embed_concurrency: int = EMBED_CONCURRENCY
    log_level: str = LOG_LEVEL

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current process environment.

        Re-reads the environment instead of reusing the import-time
        constants so tests and the CLI can adjust variables first.
        """
        return cls(
            data_dir=Path(env("CORPUSQA_DATA_DIR")),
            ingest_root=_optional_path(env("CORPUSQA_INGEST_ROOT")),
            ollama_base_url=env("OLLAMA_BASE_URL"),
            chat_model=env("CHAT_MODEL"),
            embedding_model=env("EMBEDDING_MODEL"),
            request_timeout=float(env("REQUEST_TIMEOUT")),
            chunk_size=int(env("CHUNK_SIZE")),
            chunk_overlap=int(env("CHUNK_OVERLAP")),
            chunk_min_size=int(env("CHUNK_MIN_SIZE")),
            chunk_lookback=int(env("CHUNK_LOOKBACK")),
            retrieval_top_k=int(env("RETRIEVAL_TOP_K")),
            embed_concurrency=int(env("EMBED_CONCURRENCY")),
            log_level=env("LOG_LEVEL"),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
