"""SQLite-backed storage adapter.

Relational layout:
- nodes: one row per memory node
- node_facets: the node's own facet vectors (float32 blobs)
- edges: (source_id, target_id, relation) keyed relationships
- vectors: searchable facet vectors written by the vector index

Vector search loads a facet's vectors and ranks them with numpy. Each
thread gets its own connection; writes run in BEGIN IMMEDIATE transactions
so the optimistic version check and the write are one unit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Mapping

import numpy as np

from ...errors import BackendUnavailableError, ConflictError, NotFoundError
from ..models import Edge, MemoryNode, parse_timestamp
from ..vectors import bytes_to_vector, top_k_similar, vector_to_bytes
from .base import expand_edges

logger = logging.getLogger(__name__)

# v1: Initial schema
SCHEMA_VERSION = 1

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY
    );

    CREATE TABLE IF NOT EXISTS nodes (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        importance REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        last_accessed TEXT NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}',  -- JSON object
        version INTEGER NOT NULL,
        quarantined INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS node_facets (
        node_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
        facet TEXT NOT NULL,
        vector BLOB NOT NULL,
        PRIMARY KEY (node_id, facet)
    );

    CREATE TABLE IF NOT EXISTS edges (
        source_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        relation TEXT NOT NULL,
        weight REAL NOT NULL DEFAULT 1.0,
        directed INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (source_id, target_id, relation)
    );
    CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id);

    CREATE TABLE IF NOT EXISTS vectors (
        facet TEXT NOT NULL,
        node_id TEXT NOT NULL,
        vector BLOB NOT NULL,
        PRIMARY KEY (facet, node_id)
    );
    CREATE INDEX IF NOT EXISTS idx_vectors_node ON vectors(node_id);
"""


class SQLiteBackend:
    """BackendAdapter over a single SQLite database file."""

    kind = "sqlite"

    def __init__(self, path: str | Path, *, timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.name = f"sqlite:{self.path}"
        self._timeout = timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._closed = False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._guard("init_schema"):
            self._init_schema(self._get_connection())

    # =========================================================================
    # Connection handling
    # =========================================================================

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if self._closed:
                raise BackendUnavailableError(
                    "SQLite backend is closed",
                    backend=self.name,
                    operation="connect",
                )
            # Autocommit mode; transactions are opened explicitly
            conn = sqlite3.connect(
                str(self.path),
                timeout=self._timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            # WAL mode for better concurrent access
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate sqlite errors (locked, busy, I/O, corruption) to BackendUnavailableError."""
        try:
            yield
        except sqlite3.Error as e:
            raise BackendUnavailableError(
                f"SQLite {operation} failed: {e}",
                backend=self.name,
                operation=operation,
            ) from e

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Context manager for write transactions."""
        with self._guard(operation):
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(_SCHEMA)
        row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif row[0] != SCHEMA_VERSION:
            logger.warning(
                "SQLite schema version %s differs from expected %s (%s)",
                row[0],
                SCHEMA_VERSION,
                self.path,
            )

    # =========================================================================
    # Nodes
    # =========================================================================

    def put_node(self, node: MemoryNode, *, expected_version: int | None = None) -> int:
        with self._transaction("put_node") as conn:
            return self._put_node(conn, node, expected_version)

    def _put_node(
        self,
        conn: sqlite3.Connection,
        node: MemoryNode,
        expected_version: int | None,
    ) -> int:
        row = conn.execute("SELECT version FROM nodes WHERE id = ?", (node.id,)).fetchone()
        current = row["version"] if row else 0
        _check_version(node.id, expected_version, current)
        new_version = current + 1

        conn.execute(
            """
            INSERT INTO nodes (id, content, importance, created_at, last_accessed,
                               access_count, metadata, version, quarantined)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content = excluded.content,
                importance = excluded.importance,
                created_at = excluded.created_at,
                last_accessed = excluded.last_accessed,
                access_count = excluded.access_count,
                metadata = excluded.metadata,
                version = excluded.version,
                quarantined = excluded.quarantined
            """,
            (
                node.id,
                node.content,
                float(node.importance),
                node.created_at.isoformat(),
                node.last_accessed.isoformat(),
                int(node.access_count),
                json.dumps(node.metadata, default=str),
                new_version,
                int(node.quarantined),
            ),
        )
        conn.execute("DELETE FROM node_facets WHERE node_id = ?", (node.id,))
        conn.executemany(
            "INSERT INTO node_facets (node_id, facet, vector) VALUES (?, ?, ?)",
            [(node.id, facet, vector_to_bytes(vec)) for facet, vec in node.vectors.items()],
        )
        return new_version

    def get_node(self, node_id: str) -> MemoryNode:
        with self._guard("get_node"):
            conn = self._get_connection()
            row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
            if row is None:
                raise NotFoundError(
                    f"Node {node_id} not found",
                    resource_type="node",
                    resource_id=node_id,
                )
            facet_rows = conn.execute(
                "SELECT facet, vector FROM node_facets WHERE node_id = ?",
                (node_id,),
            ).fetchall()
        return MemoryNode(
            id=row["id"],
            content=row["content"],
            vectors={r["facet"]: bytes_to_vector(r["vector"]) for r in facet_rows},
            importance=row["importance"],
            created_at=parse_timestamp(row["created_at"]),
            last_accessed=parse_timestamp(row["last_accessed"]),
            access_count=row["access_count"],
            metadata=json.loads(row["metadata"] or "{}"),
            version=row["version"],
            quarantined=bool(row["quarantined"]),
        )

    def delete_node(self, node_id: str, *, expected_version: int | None = None) -> None:
        with self._transaction("delete_node") as conn:
            row = conn.execute("SELECT version FROM nodes WHERE id = ?", (node_id,)).fetchone()
            if row is None:
                raise NotFoundError(
                    f"Node {node_id} not found",
                    resource_type="node",
                    resource_id=node_id,
                )
            _check_version(node_id, expected_version, row["version"])
            conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))

    def scan_node_ids(self) -> list[str]:
        with self._guard("scan_node_ids"):
            cursor = self._get_connection().execute(
                "SELECT id FROM nodes ORDER BY created_at, rowid"
            )
            return [row["id"] for row in cursor.fetchall()]

    def count_nodes(self) -> int:
        with self._guard("count_nodes"):
            row = self._get_connection().execute("SELECT COUNT(*) FROM nodes").fetchone()
            return int(row[0])

    # =========================================================================
    # Edges
    # =========================================================================

    def put_edge(self, edge: Edge) -> None:
        with self._transaction("put_edge") as conn:
            self._put_edge(conn, edge)

    def _put_edge(self, conn: sqlite3.Connection, edge: Edge) -> None:
        for endpoint in (edge.source, edge.target):
            if conn.execute("SELECT 1 FROM nodes WHERE id = ?", (endpoint,)).fetchone() is None:
                raise NotFoundError(
                    f"Edge endpoint {endpoint} not found",
                    resource_type="node",
                    resource_id=endpoint,
                )
        conn.execute(
            """
            INSERT INTO edges (source_id, target_id, relation, weight, directed)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(source_id, target_id, relation) DO UPDATE SET
                weight = excluded.weight,
                directed = excluded.directed
            """,
            (edge.source, edge.target, edge.relation, float(edge.weight), int(edge.directed)),
        )

    def delete_edge(self, source: str, target: str, relation: str) -> bool:
        relation = getattr(relation, "value", relation)
        with self._transaction("delete_edge") as conn:
            cursor = conn.execute(
                "DELETE FROM edges WHERE source_id = ? AND target_id = ? AND relation = ?",
                (source, target, relation),
            )
            return cursor.rowcount > 0

    def delete_edges_of(self, node_id: str) -> int:
        with self._transaction("delete_edges_of") as conn:
            cursor = conn.execute(
                "DELETE FROM edges WHERE source_id = ? OR target_id = ?",
                (node_id, node_id),
            )
            return cursor.rowcount

    def get_edges(self, node_id: str) -> list[Edge]:
        with self._guard("get_edges"):
            cursor = self._get_connection().execute(
                """
                SELECT source_id, target_id, relation, weight, directed
                FROM edges
                WHERE source_id = ? OR target_id = ?
                ORDER BY source_id, target_id, relation
                """,
                (node_id, node_id),
            )
            return [Edge.from_row(row) for row in cursor.fetchall()]

    def neighbors(
        self,
        node_id: str,
        relation_filter: Iterable[str] | None = None,
        max_depth: int = 1,
    ) -> list[Edge]:
        return expand_edges(self.get_edges, node_id, relation_filter, max_depth)

    # =========================================================================
    # Vectors
    # =========================================================================

    def vector_search(self, facet: str, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        with self._guard("vector_search"):
            cursor = self._get_connection().execute(
                "SELECT node_id, vector FROM vectors WHERE facet = ? ORDER BY rowid",
                (facet,),
            )
            candidates = [(row["node_id"], bytes_to_vector(row["vector"])) for row in cursor]
        return top_k_similar(query, candidates, k)

    def upsert_vectors(self, node_id: str, vectors: Mapping[str, np.ndarray]) -> None:
        with self._transaction("upsert_vectors") as conn:
            conn.executemany(
                """
                INSERT INTO vectors (facet, node_id, vector) VALUES (?, ?, ?)
                ON CONFLICT(facet, node_id) DO UPDATE SET vector = excluded.vector
                """,
                [(facet, node_id, vector_to_bytes(vec)) for facet, vec in vectors.items()],
            )

    def delete_vectors(self, node_id: str, facets: Iterable[str] | None = None) -> int:
        with self._transaction("delete_vectors") as conn:
            if facets is None:
                cursor = conn.execute("DELETE FROM vectors WHERE node_id = ?", (node_id,))
                return cursor.rowcount
            removed = 0
            for facet in facets:
                cursor = conn.execute(
                    "DELETE FROM vectors WHERE node_id = ? AND facet = ?",
                    (node_id, facet),
                )
                removed += cursor.rowcount
            return removed

    # =========================================================================
    # Bulk / lifecycle
    # =========================================================================

    def batch_put(self, nodes: Iterable[MemoryNode], edges: Iterable[Edge] = ()) -> list[int]:
        with self._transaction("batch_put") as conn:
            versions = [self._put_node(conn, node, None) for node in nodes]
            for edge in edges:
                self._put_edge(conn, edge)
            return versions

    def close(self) -> None:
        """Close every connection opened by this adapter."""
        self._closed = True
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.debug("Error closing SQLite connection: %s", e)
        self._local = threading.local()
        logger.debug("Closed SQLite backend %s", self.path)


def _check_version(node_id: str, expected: int | None, actual: int) -> None:
    if expected is not None and expected != actual:
        raise ConflictError(
            f"Node {node_id} version changed (expected {expected}, found {actual})",
            node_id=node_id,
            expected_version=expected,
            actual_version=actual,
        )


__all__ = ["SCHEMA_VERSION", "SQLiteBackend"]
