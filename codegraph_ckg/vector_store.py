"""Vector index backed by LanceDB, a serverless, local-first vector database.

Each embedding model gets its own table (``chunks_<model>``), so vectors
produced by different models or dimensions are never compared with each
other.  Rows are keyed by ``chunk_id``; the chunk text itself lives in
SQLite and is joined back by :mod:`codegraph_ckg.chunk_store`.

Schema per row:

============ ============ =====================================
Column       Type         Description
============ ============ =====================================
chunk_id     utf8         Chunk identifier
project_id   utf8         Owning project
file_path    utf8         Project-relative file path
node_id      utf8         Node the chunk belongs to
content_hash utf8         SHA-1 of the embedded chunk text
vector       float32[dim] Embedding vector
============ ============ =====================================
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import lancedb
import pyarrow as pa

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

_TABLE_PREFIX = "chunks_"


def table_name(model_key: str) -> str:
    return _TABLE_PREFIX + re.sub(r"[^A-Za-z0-9_]", "_", model_key)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _in_list(values: Sequence[str]) -> str:
    return "(" + ", ".join(_quote(v) for v in values) + ")"


def _schema(dim: int) -> pa.Schema:
    return pa.schema([
        pa.field("chunk_id", pa.utf8()),
        pa.field("project_id", pa.utf8()),
        pa.field("file_path", pa.utf8()),
        pa.field("node_id", pa.utf8()),
        pa.field("content_hash", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dim)),
    ])


class VectorIndex:
    """LanceDB tables of chunk embeddings, one table per embedding model."""

    def __init__(self, lance_dir: Path) -> None:
        self.lance_dir = lance_dir
        self._lock = threading.Lock()
        self._tables: Dict[str, Any] = {}
        try:
            lance_dir.mkdir(parents=True, exist_ok=True)
            self._db: Any = lancedb.connect(str(lance_dir))
        except Exception as exc:
            raise StoreUnavailable(f"Cannot open vector index at {lance_dir}: {exc}") from exc

    def _table(self, model_key: str, dim: Optional[int] = None) -> Optional[Any]:
        """Open (or, given *dim*, create) the table for *model_key*."""
        name = table_name(model_key)
        with self._lock:
            table = self._tables.get(name)
            if table is not None:
                return table
            if name in self._db.table_names():
                table = self._db.open_table(name)
            elif dim is not None:
                table = self._db.create_table(name, schema=_schema(dim), exist_ok=True)
            else:
                return None
            self._tables[name] = table
            return table

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def upsert(self, model_key: str, rows: List[Dict[str, Any]]) -> int:
        """Insert or replace rows keyed by ``chunk_id``.

        Args:
            model_key: Embedding model that produced the vectors.
            rows: Dicts with the columns listed in the module docstring.
        """
        if not rows:
            return 0
        dim = len(rows[0]["vector"])
        try:
            table = self._table(model_key, dim)
            table.delete(f"chunk_id IN {_in_list([r['chunk_id'] for r in rows])}")
            table.add(rows)
        except Exception as exc:
            raise StoreUnavailable(f"Vector upsert failed for {model_key}: {exc}") from exc
        return len(rows)

    def delete_chunks(self, chunk_ids: Sequence[str], model_key: Optional[str] = None) -> None:
        """Delete vectors for *chunk_ids* from one model table, or from all of them."""
        if not chunk_ids:
            return
        models = [model_key] if model_key else self.list_models()
        predicate = f"chunk_id IN {_in_list(list(chunk_ids))}"
        for key in models:
            table = self._table(key)
            if table is None:
                continue
            try:
                table.delete(predicate)
            except Exception as exc:
                raise StoreUnavailable(f"Vector delete failed for {key}: {exc}") from exc

    def delete_orphans(
        self, project_id: str, file_path: str, keep: Sequence[str],
    ) -> None:
        """Delete a file's vectors except those for chunk ids in *keep*."""
        predicate = f"project_id = {_quote(project_id)} AND file_path = {_quote(file_path)}"
        if keep:
            predicate += f" AND chunk_id NOT IN {_in_list(list(keep))}"
        for key in self.list_models():
            table = self._table(key)
            if table is None:
                continue
            try:
                table.delete(predicate)
            except Exception as exc:
                raise StoreUnavailable(f"Vector cleanup failed for {file_path}: {exc}") from exc

    def drop_project(self, project_id: str) -> None:
        for key in self.list_models():
            table = self._table(key)
            if table is not None:
                try:
                    table.delete(f"project_id = {_quote(project_id)}")
                except Exception as exc:
                    raise StoreUnavailable(f"Vector cleanup failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        model_key: str,
        vector: List[float],
        project_id: str,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Cosine nearest neighbours within one project.

        Returns rows with an added ``score`` key (``1 - cosine distance``),
        best first.
        """
        table = self._table(model_key)
        if table is None:
            return []
        try:
            if table.count_rows() == 0:
                return []
            rows = (
                table
                .search(vector)
                .distance_type("cosine")
                .where(f"project_id = {_quote(project_id)}", prefilter=True)
                .limit(limit)
                .to_list()
            )
        except Exception as exc:
            raise StoreUnavailable(f"Vector search failed for {model_key}: {exc}") from exc

        for row in rows:
            # With the cosine metric, _distance is 1 - cos_sim, in [0, 2].
            row["score"] = 1.0 - float(row.get("_distance", 1.0))
        return rows

    # ------------------------------------------------------------------
    # Informational
    # ------------------------------------------------------------------

    def list_models(self) -> List[str]:
        """Model keys (sanitised) for which a table exists."""
        try:
            names = self._db.table_names()
        except Exception as exc:
            raise StoreUnavailable(f"Cannot list vector tables: {exc}") from exc
        return [n[len(_TABLE_PREFIX):] for n in names if n.startswith(_TABLE_PREFIX)]

    def count(self, model_key: str, project_id: Optional[str] = None) -> int:
        table = self._table(model_key)
        if table is None:
            return 0
        try:
            if project_id is None:
                return table.count_rows()
            return table.count_rows(f"project_id = {_quote(project_id)}")
        except Exception as exc:
            raise StoreUnavailable(f"Vector count failed: {exc}") from exc
