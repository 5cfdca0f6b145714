"""Persistence layer for the code knowledge graph.

Architecture:
- **SQLite** (:class:`Database`) holds structured data: nodes, edges,
  unresolved references, file records and chunk rows.  It runs in WAL mode
  with one writer connection and one reader connection per thread, so read
  queries never wait on an in-flight write transaction.
- **LanceDB** (via :class:`~codegraph_ckg.vector_store.VectorIndex`) holds
  embedding vectors for similarity search; see :mod:`codegraph_ckg.chunk_store`.

Writes are grouped into per-file transactions.  Transactions nest: the
outermost ``with db.transaction()`` block owns COMMIT / ROLLBACK, and
callbacks registered with :meth:`Database.on_commit` run only after the
outermost COMMIT succeeds.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import StoreSettings
from .errors import IndexCorruption, StoreUnavailable
from .linker import ReferenceLinker
from .models import Edge, Node, NodeKind, Reference, dump_metadata

logger = logging.getLogger(__name__)

# Stay well below SQLite's host-parameter limit.
_MAX_PARAMS = 500

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS nodes (
        node_id    TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        kind       TEXT NOT NULL,
        name       TEXT NOT NULL,
        file_path  TEXT NOT NULL,
        language   TEXT NOT NULL,
        start_line INTEGER NOT NULL,
        end_line   INTEGER NOT NULL,
        metadata   TEXT NOT NULL,
        ref_id     TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS edges (
        edge_key     TEXT PRIMARY KEY,
        from_id      TEXT NOT NULL,
        to_id        TEXT NOT NULL,
        relationship TEXT NOT NULL,
        project_id   TEXT NOT NULL,
        file_path    TEXT NOT NULL,
        weight       REAL NOT NULL,
        metadata     TEXT NOT NULL,
        ref_id       TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refs (
        ref_id       TEXT PRIMARY KEY,
        project_id   TEXT NOT NULL,
        file_path    TEXT NOT NULL,
        from_id      TEXT NOT NULL,
        relationship TEXT NOT NULL,
        target       TEXT NOT NULL,
        line         INTEGER NOT NULL,
        weight       REAL NOT NULL,
        candidates   TEXT NOT NULL,
        hint_paths   TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ref_keys (
        ref_id     TEXT NOT NULL,
        project_id TEXT NOT NULL,
        key        TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        project_id   TEXT NOT NULL,
        file_path    TEXT NOT NULL,
        language     TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        size         INTEGER NOT NULL,
        mtime        REAL NOT NULL,
        indexed_at   TEXT NOT NULL,
        PRIMARY KEY (project_id, file_path)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        project_id TEXT PRIMARY KEY,
        root_path  TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        chunk_id     TEXT PRIMARY KEY,
        node_id      TEXT NOT NULL,
        project_id   TEXT NOT NULL,
        file_path    TEXT NOT NULL,
        chunk_type   TEXT NOT NULL,
        ordinal      INTEGER NOT NULL,
        content      TEXT NOT NULL,
        token_count  INTEGER NOT NULL,
        content_hash TEXT NOT NULL,
        start_line   INTEGER NOT NULL,
        end_line     INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        chunk_id     TEXT NOT NULL,
        model        TEXT NOT NULL,
        project_id   TEXT NOT NULL,
        file_path    TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        PRIMARY KEY (chunk_id, model)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_name ON nodes(project_id, name)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_file ON nodes(project_id, file_path)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_ref ON nodes(ref_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_from ON edges(from_id, relationship)",
    "CREATE INDEX IF NOT EXISTS idx_edges_to ON edges(to_id, relationship)",
    "CREATE INDEX IF NOT EXISTS idx_edges_file ON edges(project_id, file_path)",
    "CREATE INDEX IF NOT EXISTS idx_edges_rel ON edges(project_id, relationship)",
    "CREATE INDEX IF NOT EXISTS idx_edges_ref ON edges(ref_id)",
    "CREATE INDEX IF NOT EXISTS idx_refs_file ON refs(project_id, file_path)",
    "CREATE INDEX IF NOT EXISTS idx_ref_keys ON ref_keys(project_id, key)",
    "CREATE INDEX IF NOT EXISTS idx_ref_keys_ref ON ref_keys(ref_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_node ON chunks(node_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(project_id, file_path)",
    "CREATE INDEX IF NOT EXISTS idx_embeddings_file ON embeddings(project_id, file_path)",
)


def batched(items: Sequence[Any], size: int = _MAX_PARAMS) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def placeholders(count: int) -> str:
    return ",".join("?" * count)


# ===================================================================
# Database  (SQLite connections + transactions)
# ===================================================================

class Database:
    """SQLite database shared by :class:`GraphStore` and the chunk store."""

    def __init__(self, db_path: Path, busy_timeout: float = 5.0) -> None:
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._tx_owner: Optional[int] = None
        self._tx_depth = 0
        self._commit_hooks: List[Callable[[], None]] = []
        self._closed = False
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = self._connect()
            self._writer.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                self._writer.execute(statement)
        except (sqlite3.DatabaseError, OSError) as exc:
            raise StoreUnavailable(f"Cannot open graph database {db_path}: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def close(self) -> None:
        self._closed = True
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        with self._write_lock:
            self._writer.close()

    # ------------------------------------------------------------------
    # Connection routing
    # ------------------------------------------------------------------

    def _reader(self) -> sqlite3.Connection:
        if self._tx_owner == threading.get_ident():
            # Reads inside a write transaction must see its uncommitted rows.
            return self._writer
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if self._closed:
                raise StoreUnavailable("Graph database is closed")
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self._reader().execute(sql, tuple(params)).fetchall()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            raise StoreUnavailable(f"Graph query failed: {exc}") from exc

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self.transaction() as conn:
            try:
                return conn.execute(sql, tuple(params)).rowcount
            except sqlite3.IntegrityError:
                raise
            except sqlite3.DatabaseError as exc:
                raise StoreUnavailable(f"Graph write failed: {exc}") from exc

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        rows = list(rows)
        if not rows:
            return
        with self.transaction() as conn:
            try:
                conn.executemany(sql, rows)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.DatabaseError as exc:
                raise StoreUnavailable(f"Graph write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic write scope.  Nested scopes join the outermost one."""
        with self._write_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self._writer
                finally:
                    self._tx_depth -= 1
                return

            try:
                self._writer.execute("BEGIN IMMEDIATE")
            except sqlite3.DatabaseError as exc:
                raise StoreUnavailable(f"Cannot begin transaction: {exc}") from exc
            self._tx_owner = threading.get_ident()
            self._tx_depth = 1
            hooks: List[Callable[[], None]] = []
            try:
                yield self._writer
                self._writer.execute("COMMIT")
                hooks = self._commit_hooks
            except BaseException:
                try:
                    self._writer.execute("ROLLBACK")
                except sqlite3.DatabaseError as exc:
                    logger.error("Rollback failed: %s", exc)
                raise
            finally:
                self._tx_owner = None
                self._tx_depth = 0
                self._commit_hooks = []

        for hook in hooks:
            hook()

    def on_commit(self, hook: Callable[[], None]) -> None:
        """Run *hook* after the current transaction commits (now if none is open)."""
        with self._write_lock:
            if self._tx_depth and self._tx_owner == threading.get_ident():
                self._commit_hooks.append(hook)
                return
        hook()


# ===================================================================
# GraphStore  (nodes, edges, references, file records)
# ===================================================================

def _node_from_row(row: sqlite3.Row) -> Node:
    return Node(
        node_id=row["node_id"],
        kind=row["kind"],
        name=row["name"],
        file_path=row["file_path"],
        language=row["language"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        project_id=row["project_id"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _edge_from_row(row: sqlite3.Row) -> Edge:
    return Edge(
        from_id=row["from_id"],
        to_id=row["to_id"],
        relationship=row["relationship"],
        project_id=row["project_id"],
        file_path=row["file_path"],
        weight=row["weight"],
        metadata=json.loads(row["metadata"] or "{}"),
        ref_id=row["ref_id"],
    )


def _ref_from_row(row: sqlite3.Row) -> Reference:
    return Reference(
        ref_id=row["ref_id"],
        from_id=row["from_id"],
        relationship=row["relationship"],
        target=row["target"],
        project_id=row["project_id"],
        file_path=row["file_path"],
        line=row["line"],
        weight=row["weight"],
        candidates=json.loads(row["candidates"] or "[]"),
        hint_paths=json.loads(row["hint_paths"] or "[]"),
    )


def edge_key(edge: Edge) -> str:
    return f"{edge.from_id}|{edge.to_id}|{edge.relationship}|{edge.ref_id or ''}"


def ref_keys(ref: Reference) -> List[str]:
    """Lookup keys under which a reference must be re-linked."""
    if ref.relationship == "imports":
        return [f"path:{candidate}" for candidate in ref.candidates]
    return [f"name:{ref.target}"]


class GraphStore:
    """Durable node / edge storage with bounded traversal queries.

    The store has no knowledge of parsing or embeddings.  All mutations are
    idempotent upserts keyed by id and run inside
    :meth:`Database.transaction`, so a batch applies fully or not at all.
    """

    def __init__(self, db: Database, settings: Optional[StoreSettings] = None) -> None:
        self.db = db
        self.settings = settings or StoreSettings()
        self.linker = ReferenceLinker(self)

    # ------------------------------------------------------------------
    # Per-file replacement
    # ------------------------------------------------------------------

    def replace_file(
        self,
        project_id: str,
        file_path: str,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        refs: Sequence[Reference],
    ) -> List[str]:
        """Swap a file's graph contents and re-link everything that depends on it.

        Runs in one transaction (joining an enclosing one if open).  Any edge
        left dangling afterwards rolls the whole replacement back.

        Returns:
            Ids of nodes that existed before and are gone now.
        """
        with self.db.transaction():
            old_nodes = self.nodes_for_file(project_id, file_path)
            keys = ReferenceLinker.keys_for_nodes(old_nodes, file_path)
            keys |= ReferenceLinker.keys_for_nodes(nodes, file_path)

            self.delete_by_file(file_path, project_id)
            self.upsert_nodes(nodes)
            self.upsert_edges(edges)
            self.upsert_refs(refs)
            self.linker.link(list(refs))
            self.linker.relink(project_id, keys)
            self.assert_consistent(project_id, file_path)

        kept = {n.node_id for n in nodes}
        return [n.node_id for n in old_nodes if n.node_id not in kept]

    def remove_file(self, project_id: str, file_path: str) -> List[str]:
        """Delete a file and re-link references that pointed into it."""
        with self.db.transaction():
            old_nodes = self.nodes_for_file(project_id, file_path)
            removed = self.delete_by_file(file_path, project_id)
            self.linker.relink(project_id, ReferenceLinker.keys_for_nodes(old_nodes, file_path))
            self.assert_consistent(project_id, file_path)
        return removed

    def assert_consistent(self, project_id: str, file_path: Optional[str] = None) -> None:
        dangling = self.dangling_edges(project_id, file_path)
        if dangling:
            scope = file_path or project_id
            logger.error("%d dangling edges after applying %s", len(dangling), scope)
            raise IndexCorruption(
                f"{len(dangling)} dangling edges in {scope}", dangling=len(dangling),
            )

    def check_consistency(self, project_id: str) -> List[Edge]:
        """Project-wide dangling-edge scan; empty when the graph is sound."""
        return self.dangling_edges(project_id)

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    def upsert_nodes(self, nodes: Iterable[Node], ref_id: Optional[str] = None) -> int:
        rows = [
            (
                n.node_id, n.project_id, n.kind, n.name, n.file_path, n.language,
                n.start_line, n.end_line, dump_metadata(n.metadata), ref_id,
            )
            for n in nodes
        ]
        self.db.executemany(
            """
            INSERT OR REPLACE INTO nodes (
                node_id, project_id, kind, name, file_path, language,
                start_line, end_line, metadata, ref_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        return len(rows)

    def upsert_edges(self, edges: Iterable[Edge]) -> int:
        rows = [
            (
                edge_key(e), e.from_id, e.to_id, e.relationship, e.project_id,
                e.file_path, e.weight, dump_metadata(e.metadata), e.ref_id,
            )
            for e in edges
        ]
        self.db.executemany(
            """
            INSERT OR REPLACE INTO edges (
                edge_key, from_id, to_id, relationship, project_id,
                file_path, weight, metadata, ref_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        return len(rows)

    def upsert_refs(self, refs: Iterable[Reference]) -> int:
        refs = list(refs)
        if not refs:
            return 0
        with self.db.transaction():
            for group in batched([r.ref_id for r in refs]):
                self.db.execute(
                    f"DELETE FROM ref_keys WHERE ref_id IN ({placeholders(len(group))})",
                    group,
                )
            self.db.executemany(
                """
                INSERT OR REPLACE INTO refs (
                    ref_id, project_id, file_path, from_id, relationship,
                    target, line, weight, candidates, hint_paths
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.ref_id, r.project_id, r.file_path, r.from_id, r.relationship,
                        r.target, r.line, r.weight, json.dumps(r.candidates),
                        json.dumps(r.hint_paths),
                    )
                    for r in refs
                ],
            )
            self.db.executemany(
                "INSERT INTO ref_keys (ref_id, project_id, key) VALUES (?, ?, ?)",
                [(r.ref_id, r.project_id, key) for r in refs for key in ref_keys(r)],
            )
        return len(refs)

    def record_file(
        self,
        project_id: str,
        file_path: str,
        language: str,
        digest: str,
        size: int,
        mtime: float,
    ) -> None:
        self.db.execute(
            """
            INSERT OR REPLACE INTO files (
                project_id, file_path, language, content_hash, size, mtime, indexed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id, file_path, language, digest, size, mtime,
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_by_file(self, file_path: str, project_id: str) -> List[str]:
        """Remove a file's nodes, every edge touching them, and its references.

        Returns:
            Ids of the deleted nodes (callers cascade to chunks with them).
        """
        with self.db.transaction():
            rows = self.db.query(
                "SELECT node_id FROM nodes WHERE project_id = ? AND file_path = ?",
                (project_id, file_path),
            )
            node_ids = [r["node_id"] for r in rows]

            self.db.execute(
                "DELETE FROM edges WHERE project_id = ? AND file_path = ?",
                (project_id, file_path),
            )
            for group in batched(node_ids):
                marks = placeholders(len(group))
                self.db.execute(
                    f"DELETE FROM edges WHERE from_id IN ({marks}) OR to_id IN ({marks})",
                    list(group) + list(group),
                )
            self.db.execute(
                """
                DELETE FROM ref_keys WHERE ref_id IN (
                    SELECT ref_id FROM refs WHERE project_id = ? AND file_path = ?
                )
                """,
                (project_id, file_path),
            )
            self.db.execute(
                "DELETE FROM refs WHERE project_id = ? AND file_path = ?",
                (project_id, file_path),
            )
            self.db.execute(
                "DELETE FROM nodes WHERE project_id = ? AND file_path = ?",
                (project_id, file_path),
            )
            self.db.execute(
                "DELETE FROM files WHERE project_id = ? AND file_path = ?",
                (project_id, file_path),
            )
        if node_ids:
            logger.debug("Deleted %d nodes for %s", len(node_ids), file_path)
        return node_ids

    def delete_derived(self, ref_ids: Sequence[str]) -> None:
        """Drop edges and endpoint nodes previously derived from *ref_ids*."""
        with self.db.transaction():
            for group in batched(list(ref_ids)):
                marks = placeholders(len(group))
                self.db.execute(f"DELETE FROM edges WHERE ref_id IN ({marks})", group)
                derived = self.db.query(
                    f"SELECT node_id FROM nodes WHERE ref_id IN ({marks})", group,
                )
                ids = [r["node_id"] for r in derived]
                if ids:
                    id_marks = placeholders(len(ids))
                    self.db.execute(
                        f"DELETE FROM edges WHERE to_id IN ({id_marks})", ids,
                    )
                    self.db.execute(
                        f"DELETE FROM nodes WHERE node_id IN ({id_marks})", ids,
                    )

    def clear_project(self, project_id: str) -> None:
        with self.db.transaction():
            for table in ("edges", "ref_keys", "refs", "nodes", "files", "chunks", "embeddings"):
                self.db.execute(f"DELETE FROM {table} WHERE project_id = ?", (project_id,))

    # ------------------------------------------------------------------
    # Node reads
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[Node]:
        row = self.db.query_one("SELECT * FROM nodes WHERE node_id = ?", (node_id,))
        return _node_from_row(row) if row is not None else None

    def get_nodes(self, node_ids: Iterable[str]) -> Dict[str, Node]:
        ids = sorted(set(node_ids))
        out: Dict[str, Node] = {}
        for group in batched(ids):
            rows = self.db.query(
                f"SELECT * FROM nodes WHERE node_id IN ({placeholders(len(group))})",
                group,
            )
            for row in rows:
                out[row["node_id"]] = _node_from_row(row)
        return out

    def find_nodes(
        self,
        project_id: str,
        name: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        file_path: Optional[str] = None,
        case_insensitive: bool = False,
    ) -> List[Node]:
        clauses = ["project_id = ?"]
        params: List[Any] = [project_id]
        if name is not None:
            clauses.append("name = ? COLLATE NOCASE" if case_insensitive else "name = ?")
            params.append(name)
        if kinds:
            clauses.append(f"kind IN ({placeholders(len(kinds))})")
            params.extend(kinds)
        if file_path is not None:
            clauses.append("file_path = ?")
            params.append(file_path)
        rows = self.db.query(
            f"SELECT * FROM nodes WHERE {' AND '.join(clauses)} "
            "ORDER BY file_path, start_line, name",
            params,
        )
        return [_node_from_row(r) for r in rows]

    def nodes_for_file(self, project_id: str, file_path: str) -> List[Node]:
        return self.find_nodes(project_id, file_path=file_path)

    def file_node(self, project_id: str, file_path: str) -> Optional[Node]:
        nodes = self.find_nodes(project_id, kinds=[NodeKind.FILE], file_path=file_path)
        return nodes[0] if nodes else None

    def list_files(self, project_id: str) -> Dict[str, Dict[str, Any]]:
        rows = self.db.query("SELECT * FROM files WHERE project_id = ?", (project_id,))
        return {r["file_path"]: dict(r) for r in rows}

    def file_record(self, project_id: str, file_path: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one(
            "SELECT * FROM files WHERE project_id = ? AND file_path = ?", (project_id, file_path),
        )
        return dict(row) if row is not None else None

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def record_project(self, project_id: str, root_path: Path) -> None:
        self.db.execute(
            "INSERT OR REPLACE INTO projects (project_id, root_path, updated_at) VALUES (?, ?, ?)",
            (project_id, str(root_path), datetime.now(timezone.utc).isoformat()),
        )

    def project_root(self, project_id: str) -> Optional[Path]:
        row = self.db.query_one("SELECT root_path FROM projects WHERE project_id = ?", (project_id,))
        return Path(row["root_path"]) if row is not None else None

    def list_projects(self) -> Dict[str, str]:
        rows = self.db.query("SELECT project_id, root_path FROM projects ORDER BY project_id")
        return {r["project_id"]: r["root_path"] for r in rows}

    # ------------------------------------------------------------------
    # Edge reads
    # ------------------------------------------------------------------

    def find_edges(
        self,
        node_id: str,
        direction: str = "out",
        relationships: Optional[Sequence[str]] = None,
    ) -> List[Edge]:
        """Edges leaving (``out``), entering (``in``) or touching (``both``) a node."""
        if direction not in ("out", "in", "both"):
            raise ValueError(f"Unknown edge direction: {direction}")
        columns = {"out": ["from_id"], "in": ["to_id"], "both": ["from_id", "to_id"]}[direction]
        edges: List[Edge] = []
        for column in columns:
            sql = f"SELECT * FROM edges WHERE {column} = ?"
            params: List[Any] = [node_id]
            if relationships:
                sql += f" AND relationship IN ({placeholders(len(relationships))})"
                params.extend(relationships)
            sql += " ORDER BY edge_key"
            edges.extend(_edge_from_row(r) for r in self.db.query(sql, params))
        return edges

    def edges_into(
        self, node_ids: Sequence[str], relationships: Sequence[str],
    ) -> List[Edge]:
        edges: List[Edge] = []
        ids = sorted(set(node_ids))
        rel_marks = placeholders(len(relationships))
        for group in batched(ids):
            rows = self.db.query(
                f"SELECT * FROM edges WHERE to_id IN ({placeholders(len(group))}) "
                f"AND relationship IN ({rel_marks}) ORDER BY edge_key",
                list(group) + list(relationships),
            )
            edges.extend(_edge_from_row(r) for r in rows)
        return edges

    def iter_edges(
        self,
        project_id: str,
        relationships: Optional[Sequence[str]] = None,
        file_path: Optional[str] = None,
    ) -> List[Edge]:
        """Edges of a project, optionally only those owned by *file_path*."""
        sql = "SELECT * FROM edges WHERE project_id = ?"
        params: List[Any] = [project_id]
        if file_path is not None:
            sql += " AND file_path = ?"
            params.append(file_path)
        if relationships:
            sql += f" AND relationship IN ({placeholders(len(relationships))})"
            params.extend(relationships)
        return [_edge_from_row(r) for r in self.db.query(sql + " ORDER BY edge_key", params)]

    def in_degree(self, node_ids: Sequence[str], relationships: Sequence[str]) -> Dict[str, int]:
        counts: Dict[str, int] = {nid: 0 for nid in node_ids}
        rel_marks = placeholders(len(relationships))
        for group in batched(list(node_ids)):
            rows = self.db.query(
                f"SELECT to_id, COUNT(*) AS n FROM edges "
                f"WHERE to_id IN ({placeholders(len(group))}) "
                f"AND relationship IN ({rel_marks}) GROUP BY to_id",
                list(group) + list(relationships),
            )
            for row in rows:
                counts[row["to_id"]] = row["n"]
        return counts

    # ------------------------------------------------------------------
    # References (consumed by the linker)
    # ------------------------------------------------------------------

    def refs_for_keys(self, project_id: str, keys: Iterable[str]) -> List[Reference]:
        keys = sorted(set(keys))
        ref_ids: set = set()
        for group in batched(keys):
            rows = self.db.query(
                f"SELECT DISTINCT ref_id FROM ref_keys WHERE project_id = ? "
                f"AND key IN ({placeholders(len(group))})",
                [project_id] + list(group),
            )
            ref_ids.update(r["ref_id"] for r in rows)
        return self.get_refs(sorted(ref_ids))

    def get_refs(self, ref_ids: Sequence[str]) -> List[Reference]:
        refs: List[Reference] = []
        for group in batched(list(ref_ids)):
            rows = self.db.query(
                f"SELECT * FROM refs WHERE ref_id IN ({placeholders(len(group))}) ORDER BY ref_id",
                group,
            )
            refs.extend(_ref_from_row(r) for r in rows)
        return refs

    def refs_for_file(self, project_id: str, file_path: str) -> List[Reference]:
        rows = self.db.query(
            "SELECT * FROM refs WHERE project_id = ? AND file_path = ? ORDER BY ref_id",
            (project_id, file_path),
        )
        return [_ref_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def neighbors(
        self,
        node_id: str,
        depth: int = 1,
        max_depth: Optional[int] = None,
        direction: str = "both",
        relationships: Optional[Sequence[str]] = None,
    ) -> List[Tuple[Node, int]]:
        """Bounded breadth-first traversal.

        *depth* is clamped to *max_depth* (default from
        :class:`~codegraph_ckg.config.StoreSettings`), so dense graphs cannot
        trigger runaway traversal.

        Returns:
            ``(node, distance)`` pairs in BFS order, excluding the start node.
        """
        limit = self.settings.max_depth if max_depth is None else max_depth
        depth = max(0, min(depth, limit))
        seen = {node_id}
        order: List[Tuple[str, int]] = []
        queue = deque([(node_id, 0)])
        while queue:
            current, level = queue.popleft()
            if level >= depth:
                continue
            for edge in self.find_edges(current, direction, relationships):
                other = edge.to_id if edge.from_id == current else edge.from_id
                if other in seen:
                    continue
                seen.add(other)
                order.append((other, level + 1))
                queue.append((other, level + 1))
        nodes = self.get_nodes(nid for nid, _ in order)
        return [(nodes[nid], dist) for nid, dist in order if nid in nodes]

    def shortest_path(
        self, from_id: str, to_id: str, max_depth: Optional[int] = None,
    ) -> List[Node]:
        """Shortest directed path between two nodes, or ``[]`` when none is in range."""
        limit = max_depth if max_depth is not None else self.settings.max_depth * 2
        parents: Dict[str, Optional[str]] = {from_id: None}
        queue = deque([(from_id, 0)])
        while queue:
            current, level = queue.popleft()
            if current == to_id:
                break
            if level >= limit:
                continue
            for edge in self.find_edges(current, "out"):
                if edge.to_id not in parents:
                    parents[edge.to_id] = current
                    queue.append((edge.to_id, level + 1))
        if to_id not in parents:
            return []
        path: List[str] = []
        step: Optional[str] = to_id
        while step is not None:
            path.append(step)
            step = parents[step]
        nodes = self.get_nodes(path)
        return [nodes[nid] for nid in reversed(path) if nid in nodes]

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def dangling_edges(self, project_id: str, file_path: Optional[str] = None) -> List[Edge]:
        """Edges whose ``from_id`` or ``to_id`` does not resolve to a node."""
        sql = """
            SELECT e.* FROM edges e
            LEFT JOIN nodes a ON a.node_id = e.from_id
            LEFT JOIN nodes b ON b.node_id = e.to_id
            WHERE e.project_id = ? AND (a.node_id IS NULL OR b.node_id IS NULL)
        """
        params: List[Any] = [project_id]
        if file_path is not None:
            sql += """
                AND (e.file_path = ? OR e.to_id IN (
                    SELECT node_id FROM nodes WHERE project_id = ? AND file_path = ?
                ))
            """
            params.extend([file_path, project_id, file_path])
        return [_edge_from_row(r) for r in self.db.query(sql, params)]

    def graph_stats(self, project_id: str) -> Dict[str, Any]:
        kinds = self.db.query(
            "SELECT kind, COUNT(*) AS n FROM nodes WHERE project_id = ? GROUP BY kind",
            (project_id,),
        )
        rels = self.db.query(
            "SELECT relationship, COUNT(*) AS n FROM edges WHERE project_id = ? "
            "GROUP BY relationship",
            (project_id,),
        )
        files = self.db.query_one(
            "SELECT COUNT(*) AS n FROM files WHERE project_id = ?", (project_id,),
        )
        nodes_by_kind = {r["kind"]: r["n"] for r in kinds}
        edges_by_rel = {r["relationship"]: r["n"] for r in rels}
        return {
            "nodes": sum(nodes_by_kind.values()),
            "edges": sum(edges_by_rel.values()),
            "files": files["n"] if files is not None else 0,
            "nodes_by_kind": nodes_by_kind,
            "edges_by_relationship": edges_by_rel,
        }

    def most_connected(self, project_id: str, limit: int = 20) -> List[Tuple[Node, int]]:
        rows = self.db.query(
            """
            SELECT node_id, SUM(n) AS degree FROM (
                SELECT from_id AS node_id, COUNT(*) AS n FROM edges
                WHERE project_id = ? GROUP BY from_id
                UNION ALL
                SELECT to_id AS node_id, COUNT(*) AS n FROM edges
                WHERE project_id = ? GROUP BY to_id
            ) GROUP BY node_id ORDER BY degree DESC, node_id LIMIT ?
            """,
            (project_id, project_id, limit),
        )
        nodes = self.get_nodes(r["node_id"] for r in rows)
        return [(nodes[r["node_id"]], r["degree"]) for r in rows if r["node_id"] in nodes]

    def orphaned_nodes(self, project_id: str) -> List[Node]:
        """Symbol nodes with no edges at all (not even a ``defines`` edge)."""
        rows = self.db.query(
            f"""
            SELECT n.* FROM nodes n
            WHERE n.project_id = ?
              AND n.kind IN ({placeholders(len(NodeKind.SYMBOLS))})
              AND NOT EXISTS (SELECT 1 FROM edges e WHERE e.from_id = n.node_id)
              AND NOT EXISTS (SELECT 1 FROM edges e WHERE e.to_id = n.node_id)
            ORDER BY n.file_path, n.start_line
            """,
            [project_id] + list(NodeKind.SYMBOLS),
        )
        return [_node_from_row(r) for r in rows]

    def snapshot(self, project_id: str) -> Tuple[set, set]:
        """``(node rows, edge rows)`` as comparable sets, ignoring insertion order."""
        nodes = {
            (r["node_id"], r["kind"], r["name"], r["file_path"], r["start_line"],
             r["end_line"], r["metadata"])
            for r in self.db.query("SELECT * FROM nodes WHERE project_id = ?", (project_id,))
        }
        edges = {
            (r["from_id"], r["to_id"], r["relationship"], r["weight"], r["metadata"])
            for r in self.db.query("SELECT * FROM edges WHERE project_id = ?", (project_id,))
        }
        return nodes, edges
