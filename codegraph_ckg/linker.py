"""Cross-file reference resolution.

Extraction resolves names it can see inside one file.  Everything else
(calls into other modules, imports) is stored as a :class:`Reference` and
linked here against the definitions currently in the graph.  Each derived
edge carries the ``ref_id`` it came from, so re-linking a reference first
drops what it produced last time.

When a file is applied or deleted, every reference that *could* point into
it (by name or by import path) is re-linked as well.  That is what makes the
final graph independent of the order files were processed in.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .models import Edge, Node, NodeKind, Reference, Relationship, make_node_id

logger = logging.getLogger(__name__)

_TARGET_KINDS = {
    Relationship.CALLS: (NodeKind.FUNCTION, NodeKind.CLASS, NodeKind.VARIABLE),
    Relationship.REFERENCES: NodeKind.SYMBOLS,
    Relationship.EXTENDS: (NodeKind.CLASS, NodeKind.TYPE),
}


def shared_prefix(a: str, b: str) -> int:
    """Number of leading directory components two project paths share."""
    left = posixpath.dirname(a).split("/") if "/" in a else []
    right = posixpath.dirname(b).split("/") if "/" in b else []
    count = 0
    for x, y in zip(left, right):
        if x != y:
            break
        count += 1
    return count


def rank_definitions(
    candidates: Sequence[Node], from_file: str, hint_paths: Sequence[str] = (),
) -> List[Node]:
    """Order candidate definitions for a reference made in *from_file*."""
    hints = set(hint_paths)
    return sorted(
        candidates,
        key=lambda n: (
            0 if n.file_path in hints else 1,
            -shared_prefix(n.file_path, from_file),
            n.file_path,
            n.start_line,
            n.node_id,
        ),
    )


def unresolved_import(ref: Reference, language: str) -> Node:
    """File-owned endpoint node standing in for an import that has no target."""
    return Node(
        node_id=make_node_id(ref.project_id, ref.file_path, NodeKind.ENDPOINT, ref.target, ref.line),
        kind=NodeKind.ENDPOINT,
        name=ref.target,
        file_path=ref.file_path,
        language=language,
        start_line=ref.line,
        end_line=ref.line,
        project_id=ref.project_id,
        metadata={"unresolved": True, "specifier": ref.target},
    )


class ReferenceLinker:
    """Turns stored references into edges against a :class:`GraphStore`."""

    def __init__(self, graph) -> None:
        self.graph = graph

    @staticmethod
    def keys_for_nodes(nodes: Iterable[Node], file_path: str) -> Set[str]:
        keys = {f"path:{file_path}"}
        keys.update(f"name:{n.name}" for n in nodes if n.kind in NodeKind.SYMBOLS)
        return keys

    def relink(self, project_id: str, keys: Iterable[str]) -> int:
        """Re-link every reference registered under any of *keys*."""
        refs = self.graph.refs_for_keys(project_id, keys)
        return self.link(refs)

    def link(self, refs: Sequence[Reference]) -> int:
        """(Re)derive edges for *refs*.  Returns the number of edges written."""
        if not refs:
            return 0
        self.graph.delete_derived([r.ref_id for r in refs])

        edges: List[Edge] = []
        endpoints: Dict[str, List[Node]] = {}
        sources = self.graph.get_nodes(r.from_id for r in refs)
        for ref in refs:
            source = sources.get(ref.from_id)
            if source is None:
                logger.debug("Skipping reference %s from missing node %s", ref.ref_id, ref.from_id)
                continue
            if ref.relationship == Relationship.IMPORTS:
                edge, endpoint = self._link_import(ref, source)
                if endpoint is not None:
                    endpoints.setdefault(ref.ref_id, []).append(endpoint)
            else:
                edge = self._link_name(ref)
            if edge is not None:
                edges.append(edge)

        with self.graph.db.transaction():
            for ref_id, nodes in endpoints.items():
                self.graph.upsert_nodes(nodes, ref_id=ref_id)
            self.graph.upsert_edges(edges)
        return len(edges)

    def _link_import(self, ref: Reference, source: Node):
        for candidate in ref.candidates:
            target = self.graph.file_node(ref.project_id, candidate)
            if target is not None:
                edge = Edge(
                    from_id=source.node_id,
                    to_id=target.node_id,
                    relationship=Relationship.IMPORTS,
                    project_id=ref.project_id,
                    file_path=ref.file_path,
                    weight=ref.weight,
                    metadata={"specifier": ref.target},
                    ref_id=ref.ref_id,
                )
                return edge, None

        endpoint = unresolved_import(ref, source.language)
        edge = Edge(
            from_id=source.node_id,
            to_id=endpoint.node_id,
            relationship=Relationship.IMPORTS,
            project_id=ref.project_id,
            file_path=ref.file_path,
            weight=ref.weight,
            metadata={"specifier": ref.target, "unresolved": True},
            ref_id=ref.ref_id,
        )
        return edge, endpoint

    def _link_name(self, ref: Reference) -> Optional[Edge]:
        kinds = _TARGET_KINDS.get(ref.relationship, NodeKind.SYMBOLS)
        candidates = [
            n for n in self.graph.find_nodes(ref.project_id, name=ref.target, kinds=kinds)
            if n.file_path != ref.file_path
        ]
        if not candidates:
            return None
        best = rank_definitions(candidates, ref.file_path, ref.hint_paths)[0]
        return Edge(
            from_id=ref.from_id,
            to_id=best.node_id,
            relationship=ref.relationship,
            project_id=ref.project_id,
            file_path=ref.file_path,
            weight=ref.weight,
            ref_id=ref.ref_id,
        )
