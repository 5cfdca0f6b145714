"""Context builder: query -> token-budgeted bundle of relevant code.

Four phases, each allowed to fail on its own:

1. **Symbolic prefilter** for identifier-shaped queries: definitions and
   referencing code from the symbolic index.
2. **Semantic expand** through the embedding service; lexical search is
   used when the embedder is unavailable or finds nothing above threshold.
3. **Rerank** with the weighted score
   ``exact·0.45 + semantic·0.35 + recency·0.10 + proximity·0.10``.
4. **Assemble** greedily under ``max_tokens``: a file header once per file,
   a nearest-callers note, then the chunk.  Chunks are never truncated; the
   first unit that does not fit ends assembly.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .chunk_store import SemanticChunkStore
from .config import ContextSettings
from .embeddings import EmbeddingService
from .errors import CKGError, EmbedderUnavailable
from .linker import shared_prefix
from .models import (
    Chunk,
    ChunkType,
    ContextItem,
    ContextPayload,
    Node,
    Relationship,
    ScoredChunk,
)
from .storage import GraphStore
from .symbolic import SymbolicIndex
from .tokens import count_tokens

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][\w$]*(\.[A-Za-z_$][\w$]*)*$")

_SECONDS_PER_DAY = 86400.0
_TYPE_ORDER = {
    ChunkType.SIGNATURE: 0,
    ChunkType.DOCUMENTATION: 1,
    ChunkType.IMPLEMENTATION: 2,
}


@dataclass
class ContextOptions:
    """Per-call knobs for :meth:`ContextBuilder.build_context`.

    Attributes:
        current_file: Project-relative path the caller is working in; drives
            the proximity term.
        deadline: Time budget in seconds.  Checked between phases and between
            assembly steps.
        min_score: Similarity floor for semantic hits (defaults to settings).
        include_callers: Prefix each chunk with its nearest callers.
        now: Reference timestamp for recency (defaults to ``time.time()``).
    """

    current_file: Optional[str] = None
    deadline: Optional[float] = None
    min_score: Optional[float] = None
    include_callers: bool = True
    now: Optional[float] = None


@dataclass
class _Candidate:
    chunk: Chunk
    exact: float = 0.0
    semantic: float = 0.0
    score: float = 0.0


class _Clock:
    def __init__(self, budget: Optional[float]) -> None:
        self.budget = budget
        self.started = time.monotonic()

    @property
    def remaining(self) -> Optional[float]:
        if self.budget is None:
            return None
        return self.budget - (time.monotonic() - self.started)

    def expired(self) -> bool:
        remaining = self.remaining
        return remaining is not None and remaining <= 0


def proximity(file_path: str, current_file: Optional[str], one_hop: Set[str]) -> float:
    """1.0 same file, 0.6 one import hop away, else 0.4 x shared directory ratio."""
    if not current_file:
        return 0.0
    if file_path == current_file:
        return 1.0
    if file_path in one_hop:
        return 0.6
    depth = max(file_path.count("/"), current_file.count("/"))
    if depth == 0:
        return 0.4
    return 0.4 * shared_prefix(file_path, current_file) / depth


def recency(mtime: Optional[float], now: float) -> float:
    if mtime is None:
        return 0.0
    age_days = max(0.0, now - mtime) / _SECONDS_PER_DAY
    return max(0.0, 1.0 - age_days / 365.0)


class ContextBuilder:
    """Assembles LLM context from the graph, the chunk store and embeddings."""

    def __init__(
        self,
        graph: GraphStore,
        chunks: SemanticChunkStore,
        symbols: SymbolicIndex,
        embeddings: EmbeddingService,
        settings: Optional[ContextSettings] = None,
    ) -> None:
        self.graph = graph
        self.chunks = chunks
        self.symbols = symbols
        self.embeddings = embeddings
        self.settings = settings or ContextSettings()

    def build_context(
        self,
        query: str,
        project_id: str,
        max_tokens: Optional[int] = None,
        options: Optional[ContextOptions] = None,
    ) -> ContextPayload:
        options = options or ContextOptions()
        budget = self.settings.max_tokens if max_tokens is None else max_tokens
        payload = ContextPayload(query=query, project_id=project_id, max_tokens=budget)
        query = query.strip()
        if not query or budget <= 0:
            return payload

        clock = _Clock(options.deadline)
        candidates: Dict[str, _Candidate] = {}
        attempted = 0
        failed = 0

        # Phase 1: symbolic prefilter
        if IDENTIFIER_RE.match(query):
            attempted += 1
            try:
                self._symbolic(query, project_id, options, candidates)
            except CKGError as exc:
                failed += 1
                payload.reasons.append(f"symbolic lookup failed: {exc}")
                logger.warning("Symbolic lookup failed for %r: %s", query, exc)

        # Phase 2: semantic expand, lexical fallback
        if clock.expired():
            payload.partial = True
        else:
            attempted += 1
            if not self._retrieve(query, project_id, options, clock, candidates, payload):
                failed += 1

        payload.candidate_count = len(candidates)
        if attempted and failed == attempted:
            payload.degraded = True
            logger.warning("Context for %r degraded: %s", query, "; ".join(payload.reasons))
        if not candidates:
            return payload

        # Phase 3: rerank
        nodes: Dict[str, Node] = {}
        if clock.expired():
            payload.partial = True
            ranked = self._rank(list(candidates.values()), {}, {}, options, set())
        else:
            try:
                nodes = self.graph.get_nodes(c.chunk.node_id for c in candidates.values())
                files = self.graph.list_files(project_id)
                mtimes = {path: row.get("mtime") for path, row in files.items()}
                one_hop = self._one_hop(project_id, options.current_file)
                ranked = self._rank(list(candidates.values()), nodes, mtimes, options, one_hop)
            except CKGError as exc:
                payload.reasons.append(f"rerank failed: {exc}")
                logger.warning("Rerank failed for %r: %s", query, exc)
                ranked = self._rank(list(candidates.values()), nodes, {}, options, set())

        # Phase 4: assemble
        self._assemble(ranked, nodes, options, clock, payload)
        return payload

    # ------------------------------------------------------------------
    # Retrieval phases
    # ------------------------------------------------------------------

    def _add(self, candidates: Dict[str, _Candidate], chunk: Chunk, exact: float = 0.0, semantic: float = 0.0) -> None:
        cand = candidates.get(chunk.chunk_id)
        if cand is None:
            cand = candidates[chunk.chunk_id] = _Candidate(chunk=chunk)
        cand.exact = max(cand.exact, exact)
        cand.semantic = max(cand.semantic, semantic)

    def _symbolic(
        self, query: str, project_id: str, options: ContextOptions, candidates: Dict[str, _Candidate],
    ) -> None:
        defs = self.symbols.find_definitions(query, project_id, hint_file=options.current_file)
        name = query.split(".")[-1]
        # Case-insensitive matches count as weaker exact hits.  A definition
        # is its own best semantic match, so it never trails code that only
        # mentions the name.
        exact = {d.node_id: 1.0 if d.name == name else 0.8 for d in defs}
        for node_id, chunks in self.chunks.chunks_for_nodes(exact).items():
            for chunk in chunks:
                self._add(candidates, chunk, exact=exact[node_id], semantic=exact[node_id])

        refs = self.symbols.find_references(query, project_id)[: self.settings.reference_limit]
        referencing = {edge.from_id for edge in refs}
        for chunks in self.chunks.chunks_for_nodes(referencing).values():
            for chunk in chunks:
                self._add(candidates, chunk, exact=0.5)

    def _retrieve(
        self,
        query: str,
        project_id: str,
        options: ContextOptions,
        clock: _Clock,
        candidates: Dict[str, _Candidate],
        payload: ContextPayload,
    ) -> bool:
        """Semantic search with lexical fallback.  Returns False if both failed."""
        hits: List[ScoredChunk] = []
        semantic_ok = False
        try:
            timeout = self.embeddings.timeout
            if clock.remaining is not None:
                timeout = max(0.01, min(timeout, clock.remaining))
            vector, model = self.embeddings.embed(query, timeout=timeout)
            min_score = self.settings.min_score if options.min_score is None else options.min_score
            hits = self.chunks.similarity_search(
                vector, project_id, limit=self.settings.semantic_limit,
                min_score=min_score, model=model,
            )
            semantic_ok = True
        except EmbedderUnavailable as exc:
            payload.reasons.append(f"embedder unavailable: {exc}")
            logger.warning("Embedder unavailable, using lexical search: %s", exc)
        except CKGError as exc:
            payload.reasons.append(f"semantic search failed: {exc}")
            logger.warning("Semantic search failed, using lexical search: %s", exc)

        if not hits:
            if clock.expired():
                payload.partial = True
                return semantic_ok
            try:
                hits = self.chunks.text_search(query, project_id, limit=self.settings.text_limit)
            except CKGError as exc:
                payload.reasons.append(f"text search failed: {exc}")
                logger.warning("Text search failed for %r: %s", query, exc)
                return semantic_ok
        for hit in hits:
            self._add(candidates, hit.chunk, semantic=hit.score)
        return True

    def _one_hop(self, project_id: str, current_file: Optional[str]) -> Set[str]:
        if not current_file:
            return set()
        hop = {n.file_path for n in self.symbols.find_imports(current_file, project_id)}
        hop.update(n.file_path for n in self.symbols.find_importers(current_file, project_id))
        hop.discard(current_file)
        return hop

    # ------------------------------------------------------------------
    # Rerank / assemble
    # ------------------------------------------------------------------

    def _rank(
        self,
        candidates: List[_Candidate],
        nodes: Dict[str, Node],
        mtimes: Dict[str, Optional[float]],
        options: ContextOptions,
        one_hop: Set[str],
    ) -> List[_Candidate]:
        weights = self.settings.weights
        now = options.now if options.now is not None else time.time()
        for cand in candidates:
            path = cand.chunk.file_path
            cand.score = (
                weights.exact_match * cand.exact
                + weights.semantic * cand.semantic
                + weights.recency * recency(mtimes.get(path), now)
                + weights.proximity * proximity(path, options.current_file, one_hop)
            )

        def order(cand: _Candidate) -> Tuple:
            chunk = cand.chunk
            return (
                -round(cand.score, 9),
                chunk.file_path,
                chunk.start_line,
                _TYPE_ORDER.get(chunk.chunk_type, 9),
                chunk.ordinal,
                chunk.chunk_id,
            )

        return sorted(candidates, key=order)

    def _callers_note(self, node: Optional[Node]) -> str:
        if node is None or self.settings.callers_per_chunk <= 0:
            return ""
        try:
            edges = self.graph.edges_into([node.node_id], Relationship.USAGE)
            if not edges:
                return ""
            edges.sort(key=lambda e: (-e.weight, e.file_path, e.from_id))
            callers = self.graph.get_nodes(e.from_id for e in edges[: self.settings.callers_per_chunk])
        except CKGError as exc:
            logger.debug("Caller lookup failed for %s: %s", node.node_id, exc)
            return ""
        names = [
            f"{callers[e.from_id].qualname} ({e.file_path})"
            for e in edges[: self.settings.callers_per_chunk]
            if e.from_id in callers
        ]
        return f"# Called by: {', '.join(names)}" if names else ""

    def _assemble(
        self,
        ranked: List[_Candidate],
        nodes: Dict[str, Node],
        options: ContextOptions,
        clock: _Clock,
        payload: ContextPayload,
    ) -> None:
        parts: List[str] = []
        used = 0
        seen_files: Set[str] = set()
        noted: Set[str] = set()
        lookups = options.include_callers
        for cand in ranked:
            if lookups and clock.expired():
                # Out of time: finish from memory, without further store calls.
                payload.partial = True
                lookups = False
            chunk = cand.chunk
            node = nodes.get(chunk.node_id)
            lines: List[str] = []
            if chunk.file_path not in seen_files:
                lines.append(f"# File: {chunk.file_path}")
            if lookups and chunk.node_id not in noted:
                note = self._callers_note(node)
                if note:
                    lines.append(note)
            label = node.qualname if node is not None else chunk.node_id
            kind = node.kind if node is not None else "Chunk"
            lines.append(
                f"# {kind} {label} [{chunk.chunk_type}] lines {chunk.start_line}-{chunk.end_line}"
            )
            lines.append(chunk.content)
            unit = "\n".join(lines)
            cost = count_tokens(unit)
            if used + cost > payload.max_tokens:
                break
            parts.append(unit)
            used += cost
            seen_files.add(chunk.file_path)
            noted.add(chunk.node_id)
            payload.items.append(ContextItem(
                chunk_id=chunk.chunk_id,
                node_id=chunk.node_id,
                name=label,
                kind=kind,
                file_path=chunk.file_path,
                chunk_type=chunk.chunk_type,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                score=round(cand.score, 6),
                token_count=cost,
            ))
        payload.content = "\n\n".join(parts)
        payload.token_count = count_tokens(payload.content)
