"""Graph export to JSON, Cypher (Neo4j), GEXF (Gephi) and DOT (Graphviz)."""

from __future__ import annotations

import html
import json
import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from .models import Edge, Node
from .storage import GraphStore

logger = logging.getLogger(__name__)

FORMATS = ("json", "cypher", "gexf", "dot")

_LABEL_RE = re.compile(r"[^A-Za-z0-9_]")


def export_graph(graph: GraphStore, project_id: str, fmt: str = "json", focus: str = "") -> str:
    """Serialise a project's graph.

    Args:
        graph: Store to read from.
        project_id: Project to export.
        fmt: One of :data:`FORMATS`.
        focus: Optional name/id substring; limits the export to matching
            nodes and their direct neighbours.

    Raises:
        ValueError: For an unknown *fmt*.
    """
    if fmt not in FORMATS:
        raise ValueError(f"Unknown export format '{fmt}'. Choose from: {', '.join(FORMATS)}")
    nodes = {n.node_id: n for n in graph.find_nodes(project_id)}
    edges = [e for e in graph.iter_edges(project_id) if e.from_id in nodes and e.to_id in nodes]
    nodes, edges = _focused_subgraph(nodes, edges, focus)
    logger.debug("Exporting %d nodes and %d edges of %s as %s", len(nodes), len(edges), project_id, fmt)

    if fmt == "json":
        return to_json(project_id, nodes, edges)
    if fmt == "cypher":
        return to_cypher(nodes, edges)
    if fmt == "gexf":
        return to_gexf(project_id, nodes, edges)
    return to_dot(nodes, edges)


def to_json(project_id: str, nodes: Dict[str, Node], edges: List[Edge]) -> str:
    payload = {
        "metadata": {
            "project_id": project_id,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "node_count": len(nodes),
            "edge_count": len(edges),
        },
        "nodes": [n.to_dict() for n in nodes.values()],
        "edges": [e.to_dict() for e in edges],
    }
    return json.dumps(payload, indent=2)


def to_cypher(nodes: Dict[str, Node], edges: List[Edge]) -> str:
    lines = ["// Code knowledge graph export", ""]
    for node in nodes.values():
        props = {
            "id": node.node_id,
            "name": node.name,
            "path": node.file_path,
            "language": node.language,
            "line": node.start_line,
        }
        body = ", ".join(f"{key}: {json.dumps(value)}" for key, value in props.items())
        lines.append(f"CREATE (:{_label(node.kind)} {{{body}}});")
    lines.append("")
    for edge in edges:
        lines.append(
            f"MATCH (a {{id: {json.dumps(edge.from_id)}}}), (b {{id: {json.dumps(edge.to_id)}}}) "
            f"CREATE (a)-[:{_label(edge.relationship.upper())} {{weight: {edge.weight}}}]->(b);"
        )
    return "\n".join(lines) + "\n"


def to_gexf(project_id: str, nodes: Dict[str, Node], edges: List[Edge]) -> str:
    stamp = datetime.now(timezone.utc).date().isoformat()
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<gexf xmlns="http://www.gexf.net/1.2draft" version="1.2">',
        f'  <meta lastmodifieddate="{stamp}">',
        "    <creator>codegraph-ckg</creator>",
        f"    <description>Code knowledge graph of {_esc(project_id)}</description>",
        "  </meta>",
        '  <graph mode="static" defaultedgetype="directed">',
        '    <attributes class="node">',
        '      <attribute id="kind" title="kind" type="string"/>',
        '      <attribute id="path" title="path" type="string"/>',
        '      <attribute id="language" title="language" type="string"/>',
        "    </attributes>",
        "    <nodes>",
    ]
    for node in nodes.values():
        lines.extend([
            f'      <node id="{_esc(node.node_id)}" label="{_esc(node.qualname)}">',
            "        <attvalues>",
            f'          <attvalue for="kind" value="{_esc(node.kind)}"/>',
            f'          <attvalue for="path" value="{_esc(node.file_path)}"/>',
            f'          <attvalue for="language" value="{_esc(node.language)}"/>',
            "        </attvalues>",
            "      </node>",
        ])
    lines.append("    </nodes>")
    lines.append("    <edges>")
    for i, edge in enumerate(edges):
        lines.append(
            f'      <edge id="{i}" source="{_esc(edge.from_id)}" target="{_esc(edge.to_id)}" '
            f'label="{_esc(edge.relationship)}" weight="{edge.weight}"/>'
        )
    lines.extend(["    </edges>", "  </graph>", "</gexf>"])
    return "\n".join(lines) + "\n"


def to_dot(nodes: Dict[str, Node], edges: List[Edge]) -> str:
    lines = ["digraph CodeGraph {", "  rankdir=LR;"]
    for node_id, node in nodes.items():
        label = f"{node.kind}\\n{node.qualname}"
        lines.append(f'  "{_dot(node_id)}" [label="{_dot(label)}"];')
    for edge in edges:
        lines.append(f'  "{_dot(edge.from_id)}" -> "{_dot(edge.to_id)}" [label="{edge.relationship}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


def _focused_subgraph(
    nodes: Dict[str, Node], edges: List[Edge], focus: str,
) -> Tuple[Dict[str, Node], List[Edge]]:
    if not focus:
        return nodes, edges
    focus_ids = {
        node_id for node_id, node in nodes.items()
        if focus in node_id or focus in node.name or focus in node.qualname
    }
    if not focus_ids:
        return nodes, edges
    subset = [e for e in edges if e.from_id in focus_ids or e.to_id in focus_ids]
    keep = set(focus_ids)
    for edge in subset:
        keep.add(edge.from_id)
        keep.add(edge.to_id)
    return {nid: nodes[nid] for nid in sorted(keep)}, subset


def _label(text: str) -> str:
    return _LABEL_RE.sub("_", text) or "Node"


def _esc(text: str) -> str:
    return html.escape(text, quote=True)


def _dot(text: str) -> str:
    return text.replace('"', '\\"')
