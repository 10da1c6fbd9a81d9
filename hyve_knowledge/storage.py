"""Persistence layer for the shared knowledge graph.

Architecture:
- **SQLite** holds nodes and edges for every corpus in one file.
- Vector indices live beside it, one file per corpus
  (see :mod:`hyve_knowledge.index_manager`).

The schema is versioned.  On open the store reads the highest applied
version, runs the missing migrations in order and records each new
version.  Every migration step is additive and safe to re-run.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .models import Edge, Node

logger = logging.getLogger(__name__)

T = TypeVar("T")

RowMapper = Callable[[sqlite3.Row], T]


class StoreError(RuntimeError):
    """Raised when the store cannot be opened or migrated."""


# ===================================================================
# Schema
# ===================================================================

_SCHEMA_V1: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version     INTEGER PRIMARY KEY,
        applied_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_hashes (
        file_path   TEXT PRIMARY KEY,
        file_hash   TEXT NOT NULL,
        corpus_type TEXT NOT NULL DEFAULT 'java',
        indexed_at  TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS nodes (
        id             TEXT PRIMARY KEY,
        node_type      TEXT NOT NULL,
        display_name   TEXT NOT NULL,
        file_path      TEXT,
        line_start     INTEGER,
        line_end       INTEGER,
        content        TEXT,
        embedding_text TEXT,
        chunk_index    INTEGER,
        owning_file    TEXT,
        metadata       TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS edges (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        source_id       TEXT NOT NULL,
        target_id       TEXT NOT NULL,
        edge_type       TEXT NOT NULL,
        owning_file_id  TEXT,
        target_resolved INTEGER NOT NULL DEFAULT 1,
        metadata        TEXT,
        UNIQUE(source_id, target_id, edge_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS index_errors (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        file_path   TEXT,
        error_type  TEXT NOT NULL,
        message     TEXT NOT NULL,
        created_at  TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(node_type)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_file ON nodes(file_path)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_display ON nodes(display_name)",
    "CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_type ON edges(edge_type)",
    "CREATE INDEX IF NOT EXISTS idx_edges_owning ON edges(owning_file_id)",
    "CREATE INDEX IF NOT EXISTS idx_file_hashes_corpus ON file_hashes(corpus_type)",
)

_SCHEMA_V2_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("corpus", "TEXT NOT NULL DEFAULT 'code'"),
    ("data_type", "TEXT"),
)

_SCHEMA_V2_INDICES: Tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_nodes_corpus ON nodes(corpus)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_data_type ON nodes(data_type)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_corpus_data_type ON nodes(corpus, data_type)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_corpus_chunk ON nodes(corpus, chunk_index)",
)

SCHEMA_VERSION = 2


def _migrate_v1(conn: sqlite3.Connection) -> None:
    for stmt in _SCHEMA_V1:
        conn.execute(stmt)


def _migrate_v2(conn: sqlite3.Connection) -> None:
    """Multi-corpus columns.  Guarded so a partially applied step can re-run."""
    existing = {row[1] for row in conn.execute("PRAGMA table_info(nodes)")}
    for column, decl in _SCHEMA_V2_COLUMNS:
        if column not in existing:
            conn.execute(f"ALTER TABLE nodes ADD COLUMN {column} {decl}")
    for stmt in _SCHEMA_V2_INDICES:
        conn.execute(stmt)


MIGRATIONS: Tuple[Tuple[int, str, Callable[[sqlite3.Connection], None]], ...] = (
    (1, "base graph schema", _migrate_v1),
    (2, "multi-corpus columns", _migrate_v2),
)


# ===================================================================
# GraphStore
# ===================================================================

class GraphStore:
    """SQLite-backed typed node/edge store shared by all corpora.

    The connection is shared between threads; a re-entrant lock serialises
    access to it.  Writes that must be atomic go through
    :meth:`in_transaction`.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 10.0) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn: Optional[sqlite3.Connection] = None
        try:
            self.conn = sqlite3.connect(
                str(self.db_path),
                timeout=busy_timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except sqlite3.DatabaseError as exc:
            if self.conn is not None:
                self.conn.close()
            raise StoreError(f"Cannot open knowledge database at {self.db_path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error as exc:
                logger.warning("Error closing knowledge database: %s", exc)

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def schema_version(self) -> int:
        with self._lock:
            return self._read_version()

    def _read_version(self) -> int:
        try:
            row = self.conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
        except sqlite3.OperationalError:
            return 0
        return int(row[0]) if row else 0

    def _migrate(self) -> None:
        # BEGIN IMMEDIATE takes the write lock up front, so two processes
        # opening the same file cannot both run the same migration.
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                current = self._read_version()
                for version, label, step in MIGRATIONS:
                    if current >= version:
                        continue
                    logger.info("Migrating knowledge database to schema v%d (%s)", version, label)
                    step(self.conn)
                    self.conn.execute(
                        "INSERT OR REPLACE INTO schema_version (version, applied_at) "
                        "VALUES (?, datetime('now'))",
                        (version,),
                    )
                self.conn.execute("COMMIT")
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        mapper: Optional[RowMapper[T]] = None,
    ) -> List[Any]:
        """Run a read query; map each row through *mapper* when given."""
        with self._lock:
            rows = self.conn.execute(sql, tuple(params)).fetchall()
        if mapper is None:
            return rows
        return [mapper(row) for row in rows]

    def query_safe(
        self,
        sql: str,
        params: Sequence[Any] = (),
        mapper: Optional[RowMapper[T]] = None,
    ) -> List[Any]:
        """Like :meth:`query` but a failing statement yields ``[]`` and a warning."""
        try:
            return self.query(sql, params, mapper)
        except sqlite3.Error as exc:
            logger.warning("Knowledge query failed: %s", exc)
            return []

    def scalar(self, sql: str, params: Sequence[Any] = (), default: Any = 0) -> Any:
        rows = self.query_safe(sql, params)
        if not rows or rows[0][0] is None:
            return default
        return rows[0][0]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single write statement; returns the affected row count."""
        with self._lock:
            cur = self.conn.execute(sql, tuple(params))
            return cur.rowcount

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager form of :meth:`in_transaction`."""
        with self._lock:
            self.conn.execute("BEGIN")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def in_transaction(self, block: Callable[[sqlite3.Connection], T]) -> T:
        """Run *block* atomically; any exception rolls everything back."""
        with self.transaction() as conn:
            return block(conn)

    # ------------------------------------------------------------------
    # Write helpers (used by ingestion pipelines and fixtures)
    # ------------------------------------------------------------------

    def upsert_nodes(self, nodes: Iterable[Node]) -> int:
        rows = [
            (
                n.node_id,
                n.node_type,
                n.display_name,
                n.file_path,
                n.line_start,
                n.line_end,
                n.content,
                n.embedding_text,
                n.chunk_index,
                n.owning_file,
                json.dumps(n.metadata) if n.metadata else None,
                n.corpus,
                n.data_type,
            )
            for n in nodes
        ]
        if not rows:
            return 0

        def _write(conn: sqlite3.Connection) -> int:
            conn.executemany(
                """
                INSERT OR REPLACE INTO nodes (
                    id, node_type, display_name, file_path, line_start, line_end,
                    content, embedding_text, chunk_index, owning_file, metadata,
                    corpus, data_type
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            return len(rows)

        return self.in_transaction(_write)

    def upsert_edges(self, edges: Iterable[Edge]) -> int:
        rows = [
            (
                e.source_id,
                e.target_id,
                e.edge_type.value,
                e.owning_file_id,
                1 if e.target_resolved else 0,
                json.dumps(e.metadata) if e.metadata else None,
            )
            for e in edges
        ]
        if not rows:
            return 0

        def _write(conn: sqlite3.Connection) -> int:
            # (source, target, type) is unique, so re-indexing is idempotent.
            conn.executemany(
                """
                INSERT INTO edges (
                    source_id, target_id, edge_type, owning_file_id, target_resolved, metadata
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_id, target_id, edge_type) DO UPDATE SET
                    owning_file_id = excluded.owning_file_id,
                    target_resolved = excluded.target_resolved,
                    metadata = excluded.metadata
                """,
                rows,
            )
            return len(rows)

        return self.in_transaction(_write)

    def remove_nodes_for_file(self, file_path: str) -> int:
        """Remove all nodes of a file plus the edges it owns or touches."""

        def _delete(conn: sqlite3.Connection) -> int:
            ids = [r[0] for r in conn.execute("SELECT id FROM nodes WHERE file_path = ?", (file_path,))]
            if not ids:
                return 0
            placeholders = ",".join("?" * len(ids))
            conn.execute(
                f"DELETE FROM edges WHERE source_id IN ({placeholders}) OR target_id IN ({placeholders})",
                ids + ids,
            )
            conn.execute(f"DELETE FROM nodes WHERE id IN ({placeholders})", ids)
            return len(ids)

        return self.in_transaction(_delete)

    def record_index_error(self, error_type: str, message: str, file_path: Optional[str] = None) -> None:
        self.execute(
            "INSERT INTO index_errors (file_path, error_type, message) VALUES (?, ?, ?)",
            (file_path, error_type, message),
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[sqlite3.Row]:
        rows = self.query("SELECT * FROM nodes WHERE id = ? LIMIT 1", (node_id,))
        return rows[0] if rows else None

    def get_edges(self) -> List[sqlite3.Row]:
        return self.query("SELECT * FROM edges ORDER BY id")

    def corpus_nodes_by_chunk(self, corpus_id: str) -> List[sqlite3.Row]:
        """Nodes of a corpus that carry a vector, in chunk-index order."""
        return self.query(
            """SELECT id, chunk_index, embedding_text, content FROM nodes
               WHERE corpus = ? AND chunk_index IS NOT NULL
               ORDER BY chunk_index""",
            (corpus_id,),
        )
