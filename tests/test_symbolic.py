"""Tests for definitions, references, impact and dependency analysis."""

from pathlib import Path

import pytest

from codegraph_ckg.engine import CodeKnowledgeGraph
from codegraph_ckg.models import NodeKind, Relationship
from codegraph_ckg.symbolic import (
    HIGH_IMPACT,
    LOW_IMPACT,
    MODERATE_IMPACT,
    NOT_FOUND,
    UNUSED,
    recommend,
    strongly_connected,
)


@pytest.mark.parametrize(
    "found, refs, spread, expected",
    [
        (False, 0, 0, NOT_FOUND),
        (True, 0, 0, UNUSED),
        (True, 1, 1, LOW_IMPACT),
        (True, 9, 3, LOW_IMPACT),
        (True, 9, 4, MODERATE_IMPACT),
        (True, 30, 10, MODERATE_IMPACT),
        (True, 30, 11, HIGH_IMPACT),
    ],
)
def test_recommendation_table(found, refs, spread, expected):
    assert recommend(found, refs, spread) == expected


def test_strongly_connected_components():
    adjacency = {"a": ["b"], "b": ["c"], "c": ["a"], "d": ["a"], "e": []}
    components = strongly_connected(["a", "b", "c", "d", "e"], adjacency)
    assert sorted(sorted(c) for c in components) == [["a", "b", "c"], ["d"], ["e"]]


class TestDefinitions:
    """Tests for find_definitions."""

    def test_function(self, indexed_engine: CodeKnowledgeGraph):
        [node] = indexed_engine.find_definitions("apply_tax", "sample")
        assert node.kind == NodeKind.FUNCTION
        assert (node.file_path, node.start_line) == ("utils.py", 6)

    def test_qualified_method(self, indexed_engine: CodeKnowledgeGraph):
        [node] = indexed_engine.find_definitions("Item.value", "sample")
        assert node.kind == NodeKind.FUNCTION
        assert node.qualname == "Item.value"
        assert indexed_engine.find_definitions("Warehouse.value", "sample") == []

    def test_unknown_symbol_is_empty(self, indexed_engine: CodeKnowledgeGraph):
        assert indexed_engine.find_definitions("does_not_exist", "sample") == []
        assert indexed_engine.find_definitions("  ", "sample") == []

    def test_exact_case_ranks_first(self, engine: CodeKnowledgeGraph, temp_dir: Path, write_source):
        root = temp_dir / "cases"
        write_source(root, "a.py", "def cart():\n    return 1\n")
        write_source(root, "b.py", "class Cart:\n    pass\n")
        engine.build_index("cases", root)

        names = [n.name for n in engine.find_definitions("Cart", "cases")]
        assert names == ["Cart", "cart"]
        names = [n.name for n in engine.find_definitions("cart", "cases")]
        assert names == ["cart", "Cart"]

    def test_hint_file_orders_duplicates(self, engine: CodeKnowledgeGraph, temp_dir: Path, write_source):
        root = temp_dir / "dupes"
        write_source(root, "a/helpers.py", "def slugify(s):\n    return s\n")
        write_source(root, "b/helpers.py", "def slugify(s):\n    return s.lower()\n")
        engine.build_index("dupes", root)

        assert [n.file_path for n in engine.find_definitions("slugify", "dupes")] == [
            "a/helpers.py", "b/helpers.py",
        ]
        hinted = engine.find_definitions("slugify", "dupes", hint_file="b/views.py")
        assert hinted[0].file_path == "b/helpers.py"


class TestReferences:
    """Tests for find_references and analyze_impact."""

    def test_cross_file_call(self, indexed_engine: CodeKnowledgeGraph):
        refs = indexed_engine.find_references("apply_tax", "sample")
        assert len(refs) == 1
        assert refs[0].relationship == Relationship.CALLS
        assert refs[0].file_path == "inventory.py"
        caller = indexed_engine.graph.get_node(refs[0].from_id)
        assert caller.name == "total_value"

    def test_js_cross_file_call(self, indexed_engine: CodeKnowledgeGraph):
        refs = indexed_engine.find_references("formatPrice", "sample")
        assert {e.file_path for e in refs} == {"web/cart.js"}

    def test_impact_low(self, indexed_engine: CodeKnowledgeGraph):
        report = indexed_engine.analyze_impact("apply_tax", "sample")
        assert report.reference_count == 1
        assert report.file_spread == 1
        assert report.files == {"inventory.py": 1}
        assert report.recommendation == LOW_IMPACT

    def test_impact_unused(self, indexed_engine: CodeKnowledgeGraph):
        report = indexed_engine.analyze_impact("legacy_discount", "sample")
        assert report.reference_count == 0
        assert report.recommendation == UNUSED

    def test_impact_not_found(self, indexed_engine: CodeKnowledgeGraph):
        report = indexed_engine.analyze_impact("nope", "sample")
        assert report.recommendation == NOT_FOUND
        assert report.definitions == []

    def test_impact_moderate(self, engine: CodeKnowledgeGraph, temp_dir: Path, write_source):
        root = temp_dir / "spread"
        write_source(root, "core.py", "def helper():\n    return 1\n")
        for i in range(4):
            write_source(root, f"use{i}.py", f"from core import helper\n\n\ndef f{i}():\n    return helper()\n")
        engine.build_index("spread", root)

        report = engine.analyze_impact("helper", "spread")
        assert report.file_spread == 4
        assert report.recommendation == MODERATE_IMPACT


class TestProjectAnalyses:
    """Tests for unused exports and import cycles."""

    def test_unused_exports(self, indexed_engine: CodeKnowledgeGraph):
        unused = indexed_engine.find_unused_exports("sample")
        assert [(n.file_path, n.name) for n in unused] == [
            ("utils.py", "legacy_discount"),
            ("web/cart.js", "describeCart"),
            ("web/types.ts", "CartItem"),
        ]

    def test_entry_points_and_private_names_are_not_reported(self, indexed_engine: CodeKnowledgeGraph):
        names = {n.name for n in indexed_engine.find_unused_exports("sample")}
        assert "main" not in names
        assert "_round_cents" not in names

    def test_no_cycles_in_sample(self, indexed_engine: CodeKnowledgeGraph):
        assert indexed_engine.find_circular_dependencies("sample") == []

    def test_single_cycle_detected(self, engine: CodeKnowledgeGraph, temp_dir: Path, write_source):
        root = temp_dir / "cyclic"
        write_source(root, "a.py", "import b\n")
        write_source(root, "b.py", "import c\n")
        write_source(root, "c.py", "import a\n")
        write_source(root, "d.py", "import a\n")
        write_source(root, "e.py", "X = 1\n")
        engine.build_index("cyclic", root)

        cycles = engine.find_circular_dependencies("cyclic")
        assert len(cycles) == 1
        assert [n.file_path for n in cycles[0]] == ["a.py", "b.py", "c.py"]
        assert all(n.kind == NodeKind.FILE for n in cycles[0])

    def test_cycle_disappears_after_edit(self, engine: CodeKnowledgeGraph, temp_dir: Path, write_source):
        root = temp_dir / "pair"
        write_source(root, "a.py", "import b\n")
        write_source(root, "b.py", "import a\n")
        engine.build_index("pair", root)
        assert len(engine.find_circular_dependencies("pair")) == 1

        write_source(root, "b.py", "X = 1\n")
        engine.build_index("pair", root)
        assert engine.find_circular_dependencies("pair") == []

    def test_missing_imports(self, engine: CodeKnowledgeGraph, temp_dir: Path, write_source):
        root = temp_dir / "loose"
        write_source(root, "helpers.py", "def helper():\n    return 1\n")
        write_source(root, "good.py", "from helpers import helper\n\n\ndef ok():\n    return helper()\n")
        write_source(root, "bad.py", "def run():\n    return helper()\n")
        engine.build_index("loose", root)

        missing = engine.find_missing_imports("bad.py", "loose")
        assert [(n.name, n.file_path) for n in missing] == [("helper", "helpers.py")]
        assert engine.find_missing_imports("good.py", "loose") == []
        assert engine.find_missing_imports("nope.py", "loose") == []

    def test_sample_has_no_missing_imports(self, indexed_engine: CodeKnowledgeGraph):
        assert indexed_engine.find_missing_imports("inventory.py", "sample") == []

    def test_connectivity(self, indexed_engine: CodeKnowledgeGraph):
        data = indexed_engine.analyze_connectivity("sample")
        stats = data["statistics"]
        assert data["connectivity"]["cycle_count"] == 0
        assert data["connectivity"]["average_connections"] == round(stats["edges"] / stats["nodes"], 3)
        degrees = [hub["degree"] for hub in data["hubs"]]
        assert degrees == sorted(degrees, reverse=True)
        assert 0 < len(degrees) <= 10


class TestNavigation:
    def test_search_symbols(self, indexed_engine: CodeKnowledgeGraph):
        results = indexed_engine.search_symbols("format", "sample")
        top = {node.name for node, score in results[:2]}
        assert top == {"format_price", "formatPrice"}
        assert all(score == 0.9 for _, score in results[:2])

    def test_search_symbols_fuzzy(self, indexed_engine: CodeKnowledgeGraph):
        names = [node.name for node, _ in indexed_engine.search_symbols("aply_tax", "sample")]
        assert names[0] == "apply_tax"
        assert indexed_engine.symbols.search_symbols("aply_tax", "sample", fuzzy=False) == []

    def test_importers_and_imports(self, indexed_engine: CodeKnowledgeGraph):
        importers = indexed_engine.symbols.find_importers("utils.py", "sample")
        assert [n.file_path for n in importers] == ["inventory.py"]
        imports = indexed_engine.symbols.find_imports("inventory.py", "sample")
        assert [n.file_path for n in imports] == ["models.py", "utils.py"]
        assert indexed_engine.symbols.find_importers("missing.py", "sample") == []

    def test_exports(self, indexed_engine: CodeKnowledgeGraph):
        names = {n.name for n in indexed_engine.symbols.find_exports("web/cart.js", "sample")}
        assert names == {"cartTotal", "describeCart"}

    def test_symbol_neighborhood(self, indexed_engine: CodeKnowledgeGraph):
        hood = indexed_engine.symbols.symbol_neighborhood("total_value", "sample")
        [entry] = hood["definitions"]
        names = {n["name"] for n in entry["neighbors"]}
        assert {"apply_tax", "report", "inventory.py"} <= names
