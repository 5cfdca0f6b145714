"""Symbolic index: definitions, references, impact and dependency analysis.

The index keeps no state of its own; every call is answered from the
:class:`~codegraph_ckg.storage.GraphStore`.  Lookups for symbols that do not
exist return empty results rather than raising.
"""

from __future__ import annotations

import difflib
import logging
import posixpath
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .linker import shared_prefix
from .models import Edge, ImpactReport, Node, NodeKind, Relationship
from .storage import GraphStore

logger = logging.getLogger(__name__)

NOT_FOUND = "symbol not found"
UNUSED = "unused, safe to remove or rename"
HIGH_IMPACT = "high-impact, coordinate before renaming"
MODERATE_IMPACT = "moderate-impact, update callers across affected files"
LOW_IMPACT = "low-impact, safe to rename with local updates"


def recommend(found: bool, reference_count: int, file_spread: int) -> str:
    """Fixed impact rule table."""
    if not found:
        return NOT_FOUND
    if reference_count == 0:
        return UNUSED
    if file_spread > 10:
        return HIGH_IMPACT
    if file_spread > 3:
        return MODERATE_IMPACT
    return LOW_IMPACT


def strongly_connected(nodes: Iterable[str], adjacency: Dict[str, List[str]]) -> List[List[str]]:
    """Tarjan's algorithm without recursion; O(V + E)."""
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    stack: List[str] = []
    on_stack = set()
    components: List[List[str]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work: List[Tuple[str, int]] = [(root, 0)]
        while work:
            node, i = work[-1]
            successors = adjacency.get(node, [])
            if i < len(successors):
                work[-1] = (node, i + 1)
                nxt = successors[i]
                if nxt not in index:
                    index[nxt] = low[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, 0))
                elif nxt in on_stack:
                    low[node] = min(low[node], index[nxt])
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component: List[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
    return components


class SymbolicIndex:
    def __init__(self, graph: GraphStore) -> None:
        self.graph = graph

    # ------------------------------------------------------------------
    # Definitions / references
    # ------------------------------------------------------------------

    def find_definitions(
        self, symbol_name: str, project_id: str, hint_file: Optional[str] = None,
    ) -> List[Node]:
        """Definitions of *symbol_name*, best match first.

        Exact-case matches rank above case-insensitive ones; within each
        group, definitions closer to *hint_file* come first, then
        alphabetical by path, name and line.  ``Class.method`` queries match
        on the method's parent (or, for ``module.func``, the file stem).
        """
        symbol_name = symbol_name.strip()
        if not symbol_name:
            return []
        parts = symbol_name.split(".")
        name, qualifier = parts[-1], (parts[-2] if len(parts) > 1 else None)

        exact = self._qualified(
            self.graph.find_nodes(project_id, name=name, kinds=NodeKind.SYMBOLS),
            qualifier, case_sensitive=True,
        )
        seen = {n.node_id for n in exact}
        loose = [
            n for n in self._qualified(
                self.graph.find_nodes(
                    project_id, name=name, kinds=NodeKind.SYMBOLS, case_insensitive=True,
                ),
                qualifier, case_sensitive=False,
            )
            if n.node_id not in seen
        ]

        def proximity(node: Node) -> Tuple[int, int]:
            if not hint_file:
                return (0, 0)
            same = 0 if node.file_path == hint_file else 1
            return (same, -shared_prefix(node.file_path, hint_file))

        def order(nodes: List[Node]) -> List[Node]:
            return sorted(
                nodes,
                key=lambda n: (proximity(n), n.file_path, n.name, n.start_line),
            )

        return order(exact) + order(loose)

    @staticmethod
    def _qualified(nodes: List[Node], qualifier: Optional[str], case_sensitive: bool) -> List[Node]:
        if qualifier is None:
            return nodes

        def same(a: str, b: str) -> bool:
            return a == b if case_sensitive else a.lower() == b.lower()

        out = []
        for node in nodes:
            parent = node.metadata.get("parent")
            stem = posixpath.splitext(posixpath.basename(node.file_path))[0]
            if (parent and same(parent, qualifier)) or (not parent and same(stem, qualifier)):
                out.append(node)
        return out

    def _definitions_for_usage(self, symbol_name: str, project_id: str) -> List[Node]:
        defs = self.find_definitions(symbol_name, project_id)
        name = symbol_name.strip().split(".")[-1]
        exact = [d for d in defs if d.name == name]
        return exact or defs

    def find_references(self, symbol_name: str, project_id: str) -> List[Edge]:
        """``references`` / ``calls`` edges into any definition of *symbol_name*."""
        defs = self._definitions_for_usage(symbol_name, project_id)
        if not defs:
            return []
        edges = self.graph.edges_into([d.node_id for d in defs], Relationship.USAGE)
        return sorted(edges, key=lambda e: (e.file_path, e.from_id, e.to_id, e.relationship))

    def analyze_impact(self, symbol_name: str, project_id: str) -> ImpactReport:
        defs = self._definitions_for_usage(symbol_name, project_id)
        if not defs:
            return ImpactReport(
                symbol=symbol_name, reference_count=0, file_spread=0,
                recommendation=recommend(False, 0, 0),
            )
        refs = self.find_references(symbol_name, project_id)
        files: Dict[str, int] = {}
        for edge in refs:
            files[edge.file_path] = files.get(edge.file_path, 0) + 1
        return ImpactReport(
            symbol=symbol_name,
            reference_count=len(refs),
            file_spread=len(files),
            recommendation=recommend(True, len(refs), len(files)),
            definitions=defs,
            files=dict(sorted(files.items())),
        )

    # ------------------------------------------------------------------
    # Whole-project analyses
    # ------------------------------------------------------------------

    def find_unused_exports(self, project_id: str) -> List[Node]:
        """Exported symbols nothing references or calls (entry points excluded)."""
        candidates = [
            n for n in self.graph.find_nodes(project_id, kinds=NodeKind.SYMBOLS)
            if n.metadata.get("exported") and not n.metadata.get("entry_point")
        ]
        if not candidates:
            return []
        degree = self.graph.in_degree([n.node_id for n in candidates], Relationship.USAGE)
        unused = [n for n in candidates if degree.get(n.node_id, 0) == 0]
        return sorted(unused, key=lambda n: (n.file_path, n.start_line, n.name))

    def find_circular_dependencies(self, project_id: str) -> List[List[Node]]:
        """Import cycles between files, as lists of File nodes.

        Every strongly connected component of the File -> File ``imports``
        graph with two or more members is a cycle, as is a file importing
        itself.  Members are sorted by path and cycles by their first path.
        """
        files = {n.node_id: n for n in self.graph.find_nodes(project_id, kinds=[NodeKind.FILE])}
        adjacency: Dict[str, List[str]] = {}
        self_loops = set()
        for edge in self.graph.iter_edges(project_id, [Relationship.IMPORTS]):
            if edge.from_id not in files or edge.to_id not in files:
                continue
            if edge.from_id == edge.to_id:
                self_loops.add(edge.from_id)
            adjacency.setdefault(edge.from_id, []).append(edge.to_id)
        for targets in adjacency.values():
            targets.sort()

        cycles: List[List[Node]] = []
        for component in strongly_connected(sorted(files), adjacency):
            if len(component) < 2 and component[0] not in self_loops:
                continue
            members = sorted((files[nid] for nid in component), key=lambda n: n.file_path)
            cycles.append(members)
        cycles.sort(key=lambda members: members[0].file_path)
        return cycles

    def find_missing_imports(self, file_path: str, project_id: str) -> List[Node]:
        """Symbols from other files that *file_path* uses without importing their file."""
        source = self.graph.file_node(project_id, file_path)
        if source is None:
            return []
        import_edges = self.graph.find_edges(source.node_id, "out", [Relationship.IMPORTS])
        imported = {n.file_path for n in self.graph.get_nodes(e.to_id for e in import_edges).values()}
        used = self.graph.get_nodes(
            e.to_id for e in self.graph.iter_edges(project_id, Relationship.USAGE, file_path=file_path)
        )
        missing = [
            n for n in used.values()
            if n.file_path != file_path and n.file_path not in imported
        ]
        return sorted(missing, key=lambda n: (n.file_path, n.start_line, n.name))

    def analyze_connectivity(self, project_id: str, hubs: int = 10) -> Dict[str, Any]:
        """Graph-wide summary: counts, hub nodes, orphans and import cycles."""
        stats = self.graph.graph_stats(project_id)
        connected = self.graph.most_connected(project_id, hubs)
        orphaned = self.graph.orphaned_nodes(project_id)
        cycles = self.find_circular_dependencies(project_id)
        total = max(stats["nodes"], 1)
        return {
            "project_id": project_id,
            "statistics": stats,
            "hubs": [
                {"node_id": n.node_id, "name": n.qualname, "kind": n.kind,
                 "file_path": n.file_path, "degree": degree}
                for n, degree in connected
            ],
            "orphaned": [n.node_id for n in orphaned],
            "cycles": [[n.file_path for n in members] for members in cycles],
            "connectivity": {
                "average_connections": round(stats["edges"] / total, 3),
                "orphaned_percentage": round(100.0 * len(orphaned) / total, 2),
                "cycle_count": len(cycles),
            },
        }

    # ------------------------------------------------------------------
    # Navigation helpers
    # ------------------------------------------------------------------

    def search_symbols(
        self, query: str, project_id: str, fuzzy: bool = True, limit: int = 20,
    ) -> List[Tuple[Node, float]]:
        """Symbols whose name matches *query*: exact, prefix, substring, then fuzzy."""
        needle = query.strip().lower()
        if not needle:
            return []
        scored: List[Tuple[Node, float]] = []
        for node in self.graph.find_nodes(project_id, kinds=NodeKind.SYMBOLS):
            name = node.name.lower()
            if name == needle:
                score = 1.0
            elif name.startswith(needle):
                score = 0.9
            elif needle in name:
                score = 0.75
            elif fuzzy:
                score = difflib.SequenceMatcher(None, needle, name).ratio()
                if score < 0.6:
                    continue
                score *= 0.7
            else:
                continue
            scored.append((node, score))
        scored.sort(key=lambda item: (-item[1], item[0].name, item[0].file_path, item[0].start_line))
        return scored[:limit]

    def find_importers(self, file_path: str, project_id: str) -> List[Node]:
        """Files that import *file_path*."""
        target = self.graph.file_node(project_id, file_path)
        if target is None:
            return []
        edges = self.graph.find_edges(target.node_id, "in", [Relationship.IMPORTS])
        nodes = self.graph.get_nodes(e.from_id for e in edges)
        return sorted(nodes.values(), key=lambda n: n.file_path)

    def find_imports(self, file_path: str, project_id: str) -> List[Node]:
        """Files and unresolved endpoints imported by *file_path*."""
        source = self.graph.file_node(project_id, file_path)
        if source is None:
            return []
        edges = self.graph.find_edges(source.node_id, "out", [Relationship.IMPORTS])
        nodes = self.graph.get_nodes(e.to_id for e in edges)
        return sorted(nodes.values(), key=lambda n: (n.kind, n.file_path, n.name))

    def find_exports(self, file_path: str, project_id: str) -> List[Node]:
        return [
            n for n in self.graph.nodes_for_file(project_id, file_path)
            if n.kind in NodeKind.SYMBOLS and n.metadata.get("exported")
        ]

    def symbol_neighborhood(self, symbol_name: str, project_id: str, depth: int = 1) -> Dict[str, Any]:
        """Definitions of a symbol with their bounded graph neighbourhood."""
        out: Dict[str, Any] = {"symbol": symbol_name, "definitions": []}
        for node in self.find_definitions(symbol_name, project_id):
            neighbours = self.graph.neighbors(node.node_id, depth=depth)
            out["definitions"].append({
                "node": node.to_dict(),
                "neighbors": [
                    {"node_id": n.node_id, "name": n.name, "kind": n.kind,
                     "file_path": n.file_path, "distance": dist}
                    for n, dist in neighbours
                ],
            })
        return out
