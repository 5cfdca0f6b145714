"""Semantic chunk store: chunk rows in SQLite, vectors in LanceDB.

The ``embeddings`` table in SQLite records which chunk content each stored
vector was computed from.  A vector is reused as long as the chunk's
``content_hash`` is unchanged, and similarity results whose chunk has since
disappeared or changed are dropped.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections import Counter
from typing import Any, Dict, Iterable, List, Sequence

from .models import Chunk, ChunkType, Embedding, ScoredChunk
from .storage import Database, batched, placeholders
from .tokens import words
from .vector_store import VectorIndex

logger = logging.getLogger(__name__)

_CHUNK_ORDER = {
    ChunkType.SIGNATURE: 0,
    ChunkType.DOCUMENTATION: 1,
    ChunkType.IMPLEMENTATION: 2,
}

_STOPWORDS = frozenset(
    "a an and are as at be by does do for from how in is it of on or the this "
    "to what when where which who why with".split()
)


def _chunk_from_row(row: sqlite3.Row) -> Chunk:
    return Chunk(
        chunk_id=row["chunk_id"],
        node_id=row["node_id"],
        chunk_type=row["chunk_type"],
        content=row["content"],
        token_count=row["token_count"],
        project_id=row["project_id"],
        file_path=row["file_path"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        ordinal=row["ordinal"],
        content_hash=row["content_hash"],
    )


def chunk_sort_key(chunk: Chunk):
    return (chunk.file_path, chunk.start_line, _CHUNK_ORDER.get(chunk.chunk_type, 3), chunk.ordinal)


def query_terms(text: str) -> List[str]:
    seen: List[str] = []
    for word in words(text):
        if len(word) < 2 or word in _STOPWORDS or word in seen:
            continue
        seen.append(word)
    return seen


class SemanticChunkStore:
    """Chunk persistence plus similarity and lexical search."""

    def __init__(self, db: Database, vectors: VectorIndex) -> None:
        self.db = db
        self.vectors = vectors

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def upsert_chunks(self, chunks: Iterable[Chunk]) -> int:
        chunks = list(chunks)
        if not chunks:
            return 0
        with self.db.transaction():
            # A changed chunk loses its embedding record so it gets re-embedded.
            for chunk in chunks:
                self.db.execute(
                    "DELETE FROM embeddings WHERE chunk_id = ? AND content_hash != ?",
                    (chunk.chunk_id, chunk.content_hash),
                )
            self.db.executemany(
                """
                INSERT OR REPLACE INTO chunks (
                    chunk_id, node_id, project_id, file_path, chunk_type, ordinal,
                    content, token_count, content_hash, start_line, end_line
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c.chunk_id, c.node_id, c.project_id, c.file_path, c.chunk_type,
                        c.ordinal, c.content, c.token_count, c.content_hash,
                        c.start_line, c.end_line,
                    )
                    for c in chunks
                ],
            )
        return len(chunks)

    def replace_file_chunks(self, project_id: str, file_path: str, chunks: Sequence[Chunk]) -> List[str]:
        """Make *chunks* the complete chunk set of a file.

        Returns:
            Ids of chunks that were removed.
        """
        keep = {c.chunk_id for c in chunks}
        with self.db.transaction():
            rows = self.db.query(
                "SELECT chunk_id FROM chunks WHERE project_id = ? AND file_path = ?",
                (project_id, file_path),
            )
            stale = [r["chunk_id"] for r in rows if r["chunk_id"] not in keep]
            self._delete_chunk_ids(stale)
            self.upsert_chunks(chunks)
        return stale

    def delete_by_node(self, node_id: str) -> List[str]:
        return self.delete_by_nodes([node_id])

    def delete_by_nodes(self, node_ids: Sequence[str]) -> List[str]:
        """Delete the chunks of *node_ids* and, once committed, their vectors."""
        chunk_ids: List[str] = []
        with self.db.transaction():
            for group in batched(list(node_ids)):
                rows = self.db.query(
                    f"SELECT chunk_id FROM chunks WHERE node_id IN ({placeholders(len(group))})",
                    group,
                )
                chunk_ids.extend(r["chunk_id"] for r in rows)
            self._delete_chunk_ids(chunk_ids)
        return chunk_ids

    def delete_by_file(self, project_id: str, file_path: str) -> List[str]:
        return self.replace_file_chunks(project_id, file_path, [])

    def _delete_chunk_ids(self, chunk_ids: List[str]) -> None:
        if not chunk_ids:
            return
        for group in batched(chunk_ids):
            marks = placeholders(len(group))
            self.db.execute(f"DELETE FROM chunks WHERE chunk_id IN ({marks})", group)
            self.db.execute(f"DELETE FROM embeddings WHERE chunk_id IN ({marks})", group)
        self.db.on_commit(lambda: self.vectors.delete_chunks(chunk_ids))

    def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, Chunk]:
        out: Dict[str, Chunk] = {}
        for group in batched(sorted(set(chunk_ids))):
            rows = self.db.query(
                f"SELECT * FROM chunks WHERE chunk_id IN ({placeholders(len(group))})", group,
            )
            for row in rows:
                out[row["chunk_id"]] = _chunk_from_row(row)
        return out

    def chunks_for_nodes(self, node_ids: Iterable[str]) -> Dict[str, List[Chunk]]:
        out: Dict[str, List[Chunk]] = {}
        for group in batched(sorted(set(node_ids))):
            rows = self.db.query(
                f"SELECT * FROM chunks WHERE node_id IN ({placeholders(len(group))})", group,
            )
            for row in rows:
                chunk = _chunk_from_row(row)
                out.setdefault(chunk.node_id, []).append(chunk)
        for chunks in out.values():
            chunks.sort(key=chunk_sort_key)
        return out

    def chunks_for_file(self, project_id: str, file_path: str) -> List[Chunk]:
        rows = self.db.query(
            "SELECT * FROM chunks WHERE project_id = ? AND file_path = ?",
            (project_id, file_path),
        )
        return sorted((_chunk_from_row(r) for r in rows), key=chunk_sort_key)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embedded_hashes(self, chunk_ids: Sequence[str], model: str) -> Dict[str, str]:
        """``chunk_id -> content_hash`` of the vectors already stored for *model*."""
        out: Dict[str, str] = {}
        for group in batched(list(chunk_ids)):
            rows = self.db.query(
                f"SELECT chunk_id, content_hash FROM embeddings WHERE model = ? "
                f"AND chunk_id IN ({placeholders(len(group))})",
                [model] + list(group),
            )
            out.update((r["chunk_id"], r["content_hash"]) for r in rows)
        return out

    def upsert_embeddings(self, embeddings: Sequence[Embedding]) -> int:
        """Store vectors for chunks that already exist.

        The vector write goes first; the SQLite record is written only after
        it succeeded, so a failed write leaves the chunk marked as missing.
        """
        if not embeddings:
            return 0
        chunks = self.get_chunks(e.chunk_id for e in embeddings)
        by_model: Dict[str, List[Embedding]] = {}
        for emb in embeddings:
            if emb.chunk_id not in chunks:
                logger.warning("Skipping embedding for unknown chunk %s", emb.chunk_id)
                continue
            by_model.setdefault(emb.model, []).append(emb)

        written = 0
        for model, items in by_model.items():
            rows: List[Dict[str, Any]] = []
            for emb in items:
                chunk = chunks[emb.chunk_id]
                rows.append({
                    "chunk_id": chunk.chunk_id,
                    "project_id": chunk.project_id,
                    "file_path": chunk.file_path,
                    "node_id": chunk.node_id,
                    "content_hash": emb.content_hash or chunk.content_hash,
                    "vector": [float(x) for x in emb.vector],
                })
            self.vectors.upsert(model, rows)
            self.db.executemany(
                """
                INSERT OR REPLACE INTO embeddings (
                    chunk_id, model, project_id, file_path, content_hash
                ) VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (r["chunk_id"], model, r["project_id"], r["file_path"], r["content_hash"])
                    for r in rows
                ],
            )
            written += len(rows)
        return written

    def missing_embeddings(self, project_id: str, model: str) -> List[Chunk]:
        """Chunks with no current vector for *model*."""
        rows = self.db.query(
            """
            SELECT c.* FROM chunks c
            LEFT JOIN embeddings e ON e.chunk_id = c.chunk_id AND e.model = ?
            WHERE c.project_id = ?
              AND (e.chunk_id IS NULL OR e.content_hash != c.content_hash)
            ORDER BY c.file_path, c.start_line, c.ordinal
            """,
            (model, project_id),
        )
        return [_chunk_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def similarity_search(
        self,
        query_vector: List[float],
        project_id: str,
        limit: int = 10,
        min_score: float = 0.7,
        model: str = "hash",
    ) -> List[ScoredChunk]:
        """Cosine-similarity search; results below *min_score* are excluded."""
        rows = self.vectors.search(model, query_vector, project_id, limit=limit)
        hits = [r for r in rows if r["score"] >= min_score]
        chunks = self.get_chunks(r["chunk_id"] for r in hits)
        results: List[ScoredChunk] = []
        for row in hits:
            chunk = chunks.get(row["chunk_id"])
            if chunk is None or chunk.content_hash != row.get("content_hash"):
                continue
            results.append(ScoredChunk(chunk=chunk, score=row["score"], source="semantic"))
        results.sort(key=lambda s: (-s.score, s.chunk.chunk_id))
        return results[:limit]

    def text_search(self, query: str, project_id: str, limit: int = 10) -> List[ScoredChunk]:
        """Lexical search with identifier-aware TF-IDF scoring.

        Every chunk sharing at least one term with the query is a candidate.
        Matches in the owning symbol's name or file path are boosted, and
        scores are normalised so the best hit scores 1.0.
        """
        terms = query_terms(query)
        if not terms:
            return []
        clause = " OR ".join("c.content LIKE ? OR n.name LIKE ? OR c.file_path LIKE ?" for _ in terms)
        params: List[Any] = [project_id]
        for term in terms:
            pattern = f"%{term}%"
            params.extend([pattern, pattern, pattern])
        rows = self.db.query(
            f"""
            SELECT c.*, n.name AS node_name FROM chunks c
            LEFT JOIN nodes n ON n.node_id = c.node_id
            WHERE c.project_id = ? AND ({clause})
            """,
            params,
        )
        if not rows:
            return []
        total = self.db.query_one(
            "SELECT COUNT(*) AS n FROM chunks WHERE project_id = ?", (project_id,),
        )
        corpus = max(1, total["n"] if total is not None else len(rows))

        docs = []
        doc_freq: Counter = Counter()
        for row in rows:
            counts = Counter(words(row["content"]))
            name_words = set(words(row["node_name"] or ""))
            path_words = set(words(row["file_path"]))
            docs.append((row, counts, name_words, path_words))
            for term in terms:
                if counts[term] or term in name_words:
                    doc_freq[term] += 1

        scored = []
        for row, counts, name_words, path_words in docs:
            score = 0.0
            for term in terms:
                idf = math.log(1.0 + corpus / (1.0 + doc_freq[term]))
                if counts[term]:
                    score += (1.0 + math.log(counts[term])) * idf
                if term in name_words:
                    score += 2.0 * idf
                if term in path_words:
                    score += 0.5 * idf
            if score > 0:
                scored.append((score, row))
        if not scored:
            return []
        top = max(s for s, _ in scored)
        scored.sort(key=lambda item: (-item[0], item[1]["chunk_id"]))
        return [
            ScoredChunk(chunk=_chunk_from_row(row), score=score / top, source="text")
            for score, row in scored[:limit]
        ]

    # ------------------------------------------------------------------
    # Informational
    # ------------------------------------------------------------------

    def stats(self, project_id: str) -> Dict[str, Any]:
        by_type = self.db.query(
            "SELECT chunk_type, COUNT(*) AS n FROM chunks WHERE project_id = ? GROUP BY chunk_type",
            (project_id,),
        )
        by_model = self.db.query(
            "SELECT model, COUNT(*) AS n FROM embeddings WHERE project_id = ? GROUP BY model",
            (project_id,),
        )
        chunk_counts = {r["chunk_type"]: r["n"] for r in by_type}
        return {
            "chunks": sum(chunk_counts.values()),
            "chunks_by_type": chunk_counts,
            "embeddings_by_model": {r["model"]: r["n"] for r in by_model},
        }

    def clear_project(self, project_id: str) -> None:
        with self.db.transaction():
            self.db.execute("DELETE FROM chunks WHERE project_id = ?", (project_id,))
            self.db.execute("DELETE FROM embeddings WHERE project_id = ?", (project_id,))
        self.vectors.drop_project(project_id)
