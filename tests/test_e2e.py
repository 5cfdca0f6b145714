"""End-to-end: edits on disk flow through to queries."""

import time
from pathlib import Path

import pytest

from codegraph_ckg.embeddings import HashEmbeddingModel
from codegraph_ckg.engine import CodeKnowledgeGraph
from codegraph_ckg.errors import IndexCorruption
from codegraph_ckg.models import Edge, Relationship
from codegraph_ckg.symbolic import LOW_IMPACT, UNUSED


@pytest.fixture
def shop(temp_dir: Path, write_source) -> Path:
    root = temp_dir / "shop"
    write_source(root, "a.js", "export function foo() {\n  return 1;\n}\n")
    write_source(root, "b.js", "export function bar() {\n  return 2;\n}\n")
    return root


def test_edit_adds_and_removes_references(engine: CodeKnowledgeGraph, shop: Path, write_source):
    engine.build_index("shop", shop)
    assert engine.find_references("foo", "shop") == []
    assert engine.analyze_impact("foo", "shop").recommendation == UNUSED
    assert [n.name for n in engine.find_unused_exports("shop")] == ["foo", "bar"]

    write_source(shop, "b.js", "import { foo } from './a';\n\nexport function bar() {\n  return foo() + 1;\n}\n")
    report = engine.build_index("shop", shop)
    assert report.processed == ["b.js"]
    assert report.unchanged == ["a.js"]

    [ref] = engine.find_references("foo", "shop")
    assert ref.relationship == Relationship.CALLS
    assert ref.file_path == "b.js"
    assert engine.analyze_impact("foo", "shop").recommendation == LOW_IMPACT
    assert [n.file_path for n in engine.symbols.find_importers("a.js", "shop")] == ["b.js"]
    assert [n.name for n in engine.find_unused_exports("shop")] == ["bar"]

    payload = engine.build_context("foo", "shop")
    assert payload.items[0].name == "foo"
    assert "# Called by: bar (b.js)" in payload.content

    # Deleting the definition leaves the caller without an edge, not a dangling one.
    (shop / "a.js").unlink()
    report = engine.build_index("shop", shop)
    assert report.deleted == ["a.js"]
    assert engine.find_definitions("foo", "shop") == []
    assert engine.find_references("foo", "shop") == []
    assert engine.verify("shop")["dangling_edges"] == 0


def test_watch_follows_edits(engine: CodeKnowledgeGraph, shop: Path, write_source):
    watcher = engine.watch("shop", shop)
    try:
        assert watcher.running
        write_source(shop, "c.js", "import { foo } from './a';\nexport const baz = () => foo();\n")
        deadline = time.monotonic() + 15
        while time.monotonic() < deadline and not engine.find_references("foo", "shop"):
            time.sleep(0.1)
        assert engine.indexer.wait_idle(timeout=15)
        assert [e.file_path for e in engine.find_references("foo", "shop")] == ["c.js"]
    finally:
        engine.unwatch("shop")
    assert not engine.indexer.stats()["running"]


def test_verify_reports_corruption(engine: CodeKnowledgeGraph, shop: Path):
    engine.build_index("shop", shop)
    [foo] = engine.find_definitions("foo", "shop")
    engine.graph.upsert_edges([Edge(
        from_id=foo.node_id, to_id="shop::missing", relationship=Relationship.CALLS,
        project_id="shop", file_path="a.js",
    )])
    with pytest.raises(IndexCorruption) as exc:
        engine.verify("shop")
    assert exc.value.dangling == 1


def test_reopen_keeps_projects(temp_dir: Path, settings, shop: Path):
    data_dir = temp_dir / "data"
    with CodeKnowledgeGraph(settings=settings, data_dir=data_dir, embedder=HashEmbeddingModel()) as ckg:
        ckg.build_index("shop", shop)
    with CodeKnowledgeGraph(settings=settings, data_dir=data_dir, embedder=HashEmbeddingModel()) as ckg:
        assert ckg.projects() == {"shop": str(shop.resolve())}
        assert ckg.indexer.root_for("shop") == shop.resolve()
        assert ckg.find_definitions("bar", "shop")
        assert ckg.stats("shop")["graph"]["files"] == 2
