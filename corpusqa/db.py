"""Workspace store backed by SQLite.

The database in the data directory holds:
- Named models (workspaces) and their summary statistics
- The ingest manifest of each model (ordered source entries)
- A record of every index build

Each model also owns a directory for extracted source text and its index
snapshot.
"""
import json
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from corpusqa.errors import AlreadyExistsError, NotFoundError, ValidationError

logger = structlog.get_logger()

MODEL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,63}$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ModelMeta:
    """A named workspace and its statistics."""

    name: str
    created_at: str
    updated_at: str
    chunk_count: int = 0
    embedding_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "stats": {
                "chunks": self.chunk_count,
                "embeddings": self.embedding_count,
            },
        }


@dataclass
class SourceEntry:
    """One row of a model's ingest manifest."""

    ordinal: int
    source_path: str
    kind: str
    content_hash: str
    text_path: str
    metadata: Optional[Dict[str, Any]] = None


class WorkspaceStore:
    """Create, look up and update named models in a data directory."""

    def __init__(self, data_dir: Path):
        """Initialize the store, creating the schema if needed.

        Args:
            data_dir: Root directory for the database and model directories
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "corpusqa.sqlite"
        self.init_database()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection with row_factory set to sqlite3.Row."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_database(self) -> None:
        """Create tables if they don't exist."""
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS models (
                    name TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    embedding_count INTEGER NOT NULL DEFAULT 0
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sources (
                    model TEXT NOT NULL REFERENCES models(name) ON DELETE CASCADE,
                    ordinal INTEGER NOT NULL,
                    source_path TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    text_path TEXT NOT NULL,
                    metadata_json TEXT,
                    PRIMARY KEY (model, ordinal)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS index_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    model TEXT NOT NULL REFERENCES models(name) ON DELETE CASCADE,
                    indexed_at TEXT NOT NULL,
                    embedding_model TEXT NOT NULL,
                    embedding_dimension INTEGER,
                    chunk_size INTEGER NOT NULL,
                    chunk_overlap INTEGER NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    total_sources INTEGER NOT NULL,
                    metadata_json TEXT
                )
            """)

            conn.commit()
            logger.debug("database_initialized", db_path=str(self.db_path))

        except sqlite3.Error as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    # Paths

    def model_dir(self, name: str) -> Path:
        return self.data_dir / "models" / name

    def sources_dir(self, name: str) -> Path:
        return self.model_dir(name) / "sources"

    def index_path(self, name: str) -> Path:
        return self.model_dir(name) / "index.json"

    # Models

    def create_model(self, name: str) -> ModelMeta:
        """Create a new named model.

        Raises:
            ValidationError: If the name is invalid
            AlreadyExistsError: If the model already exists
        """
        if not name or not MODEL_NAME_PATTERN.match(name):
            raise ValidationError(
                f"Invalid model name {name!r} (use letters/numbers/_/-, max 64 chars)"
            )

        now = _now()
        conn = self.get_connection()

        try:
            conn.execute(
                "INSERT INTO models (name, created_at, updated_at) VALUES (?, ?, ?)",
                (name, now, now),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise AlreadyExistsError(f"Model already exists: {name}") from e
        finally:
            conn.close()

        self.model_dir(name).mkdir(parents=True, exist_ok=True)
        logger.info("model_created", model=name)

        return ModelMeta(name=name, created_at=now, updated_at=now)

    def get_model(self, name: str) -> ModelMeta:
        """Look up a model by name.

        Raises:
            NotFoundError: If no model has that name
        """
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM models WHERE name = ?", (name,)).fetchone()
        finally:
            conn.close()

        if row is None:
            raise NotFoundError(f"Model not found: {name}")
        return ModelMeta(**dict(row))

    def list_models(self) -> List[ModelMeta]:
        """List all models, most recently updated first."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM models ORDER BY updated_at DESC, name ASC"
            ).fetchall()
        finally:
            conn.close()
        return [ModelMeta(**dict(row)) for row in rows]

    def update_stats(
        self,
        name: str,
        chunk_count: Optional[int] = None,
        embedding_count: Optional[int] = None,
    ) -> ModelMeta:
        """Update the statistics of a model and bump its update time.

        Raises:
            NotFoundError: If no model has that name
        """
        meta = self.get_model(name)
        if chunk_count is not None:
            meta.chunk_count = chunk_count
        if embedding_count is not None:
            meta.embedding_count = embedding_count
        meta.updated_at = _now()

        conn = self.get_connection()
        try:
            conn.execute(
                """
                UPDATE models
                SET chunk_count = ?, embedding_count = ?, updated_at = ?
                WHERE name = ?
                """,
                (meta.chunk_count, meta.embedding_count, meta.updated_at, name),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("model_stats_update_failed", model=name, error=str(e))
            raise
        finally:
            conn.close()

        return meta

    # Ingest manifest

    def replace_sources(self, name: str, entries: List[SourceEntry]) -> None:
        """Replace the ingest manifest of a model.

        Raises:
            NotFoundError: If no model has that name
        """
        self.get_model(name)
        conn = self.get_connection()

        try:
            conn.execute("DELETE FROM sources WHERE model = ?", (name,))
            conn.executemany(
                """
                INSERT INTO sources (
                    model, ordinal, source_path, kind, content_hash, text_path, metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        name,
                        e.ordinal,
                        e.source_path,
                        e.kind,
                        e.content_hash,
                        e.text_path,
                        json.dumps(e.metadata) if e.metadata else None,
                    )
                    for e in entries
                ],
            )
            conn.execute("UPDATE models SET updated_at = ? WHERE name = ?", (_now(), name))
            conn.commit()
            logger.info("sources_manifest_replaced", model=name, source_count=len(entries))

        except sqlite3.Error as e:
            conn.rollback()
            logger.error("sources_manifest_replace_failed", model=name, error=str(e))
            raise
        finally:
            conn.close()

    def get_sources(self, name: str) -> List[SourceEntry]:
        """Return the ingest manifest of a model in ordinal order.

        Raises:
            NotFoundError: If no model has that name
        """
        self.get_model(name)
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT ordinal, source_path, kind, content_hash, text_path, metadata_json
                FROM sources WHERE model = ? ORDER BY ordinal
                """,
                (name,),
            ).fetchall()
        finally:
            conn.close()

        return [
            SourceEntry(
                ordinal=row["ordinal"],
                source_path=row["source_path"],
                kind=row["kind"],
                content_hash=row["content_hash"],
                text_path=row["text_path"],
                metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else None,
            )
            for row in rows
        ]

    # Index runs

    def insert_index_run(
        self,
        name: str,
        embedding_model: str,
        embedding_dimension: Optional[int],
        chunk_size: int,
        chunk_overlap: int,
        total_chunks: int,
        total_sources: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Record a completed index build.

        Returns:
            ID of the inserted row
        """
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """
                INSERT INTO index_runs (
                    model, indexed_at, embedding_model, embedding_dimension,
                    chunk_size, chunk_overlap, total_chunks, total_sources, metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    _now(),
                    embedding_model,
                    embedding_dimension,
                    chunk_size,
                    chunk_overlap,
                    total_chunks,
                    total_sources,
                    json.dumps(metadata) if metadata else None,
                ),
            )
            conn.commit()
            row_id = cursor.lastrowid
            logger.info("index_run_recorded", model=name, id=row_id, total_chunks=total_chunks)
            return row_id

        except sqlite3.Error as e:
            conn.rollback()
            logger.error("index_run_insert_failed", model=name, error=str(e))
            raise
        finally:
            conn.close()

    def get_latest_index_run(self, name: str) -> Optional[Dict[str, Any]]:
        """Get the most recent build record of a model, or None."""
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM index_runs WHERE model = ? ORDER BY id DESC LIMIT 1",
                (name,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        run = dict(row)
        raw = run.pop("metadata_json")
        run["metadata"] = json.loads(raw) if raw else {}
        return run
