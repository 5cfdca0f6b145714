"""Tests for graph export formats."""

import json
import xml.etree.ElementTree as ET

import pytest

from codegraph_ckg.engine import CodeKnowledgeGraph
from codegraph_ckg.graph_export import FORMATS


class TestExportGraph:
    def test_json(self, indexed_engine: CodeKnowledgeGraph):
        data = json.loads(indexed_engine.export_graph("sample", "json"))
        meta = data["metadata"]
        assert meta["project_id"] == "sample"
        assert meta["node_count"] == len(data["nodes"])
        assert meta["edge_count"] == len(data["edges"])
        stats = indexed_engine.graph.graph_stats("sample")
        assert meta["node_count"] == stats["nodes"]
        ids = {n["node_id"] for n in data["nodes"]}
        assert all(e["from_id"] in ids and e["to_id"] in ids for e in data["edges"])

    def test_cypher(self, indexed_engine: CodeKnowledgeGraph):
        text = indexed_engine.export_graph("sample", "cypher")
        assert 'CREATE (:Function {id: "' in text
        assert 'name: "apply_tax"' in text
        assert "-[:CALLS {weight: " in text

    def test_gexf_is_well_formed(self, indexed_engine: CodeKnowledgeGraph):
        root = ET.fromstring(indexed_engine.export_graph("sample", "gexf"))
        ns = {"g": "http://www.gexf.net/1.2draft"}
        nodes = root.findall(".//g:node", ns)
        edges = root.findall(".//g:edge", ns)
        assert len(nodes) == indexed_engine.graph.graph_stats("sample")["nodes"]
        assert edges
        assert "apply_tax" in {n.get("label") for n in nodes}

    def test_dot_with_focus(self, indexed_engine: CodeKnowledgeGraph):
        text = indexed_engine.export_graph("sample", "dot", focus="apply_tax")
        assert text.startswith("digraph CodeGraph {")
        assert "apply_tax" in text
        assert "total_value" in text
        assert "describeCart" not in text

    def test_unknown_format(self, indexed_engine: CodeKnowledgeGraph):
        with pytest.raises(ValueError, match="Unknown export format"):
            indexed_engine.export_graph("sample", "graphml")

    def test_every_format_handles_an_empty_project(self, engine: CodeKnowledgeGraph):
        for fmt in FORMATS:
            assert engine.export_graph("empty", fmt)
