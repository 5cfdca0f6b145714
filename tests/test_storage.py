"""Tests for the SQLite graph store."""

from pathlib import Path

import pytest

from codegraph_ckg.errors import IndexCorruption
from codegraph_ckg.models import Edge, Node, NodeKind, Reference, Relationship, make_node_id, make_ref_id
from codegraph_ckg.storage import Database, GraphStore


def _node(name: str, file_path: str, kind: str = NodeKind.FUNCTION, line: int = 1, **meta) -> Node:
    return Node(
        node_id=make_node_id("p", file_path, kind, name, line),
        kind=kind,
        name=name,
        file_path=file_path,
        language="python",
        start_line=line,
        end_line=line + 2,
        project_id="p",
        metadata=meta,
    )


def _file(file_path: str) -> Node:
    return _node(file_path.rsplit("/", 1)[-1], file_path, NodeKind.FILE)


def _defines(file_node: Node, node: Node) -> Edge:
    return Edge(file_node.node_id, node.node_id, Relationship.DEFINES, "p", node.file_path)


def _call_ref(source: Node, target: str, hints=()) -> Reference:
    return Reference(
        ref_id=make_ref_id(source.node_id, Relationship.CALLS, target, source.start_line),
        from_id=source.node_id,
        relationship=Relationship.CALLS,
        target=target,
        project_id="p",
        file_path=source.file_path,
        line=source.start_line,
        hint_paths=list(hints),
    )


def _write_file(graph: GraphStore, path: str, names, refs_to=()):
    """Store a file defining *names* whose first function calls *refs_to*."""
    f = _file(path)
    nodes = [f] + [_node(n, path, line=i * 5 + 1) for i, n in enumerate(names)]
    edges = [_defines(f, n) for n in nodes[1:]]
    refs = [_call_ref(nodes[1], t) for t in refs_to]
    graph.replace_file("p", path, nodes, edges, refs)
    return nodes


class TestDatabase:
    """Tests for connection and transaction handling."""

    def test_nested_transaction_commits_once(self, database: Database):
        database.execute("CREATE TABLE t (v INTEGER)")
        fired = []
        with database.transaction():
            database.execute("INSERT INTO t VALUES (1)")
            with database.transaction():
                database.execute("INSERT INTO t VALUES (2)")
                database.on_commit(lambda: fired.append(True))
            assert fired == []
        assert fired == [True]
        assert database.query_one("SELECT COUNT(*) AS n FROM t")["n"] == 2

    def test_rollback_discards_hooks(self, database: Database):
        database.execute("CREATE TABLE t (v INTEGER)")
        fired = []
        with pytest.raises(RuntimeError):
            with database.transaction():
                database.execute("INSERT INTO t VALUES (1)")
                database.on_commit(lambda: fired.append(True))
                raise RuntimeError("boom")
        assert fired == []
        assert database.query_one("SELECT COUNT(*) AS n FROM t")["n"] == 0

    def test_reads_inside_transaction_see_uncommitted_rows(self, database: Database):
        database.execute("CREATE TABLE t (v INTEGER)")
        with database.transaction():
            database.execute("INSERT INTO t VALUES (7)")
            assert database.query_one("SELECT v FROM t")["v"] == 7


class TestGraphStore:
    """Tests for GraphStore."""

    def test_replace_file_and_query(self, graph: GraphStore):
        nodes = _write_file(graph, "a.py", ["alpha", "beta"])
        assert graph.get_node(nodes[1].node_id).name == "alpha"
        assert {n.name for n in graph.nodes_for_file("p", "a.py")} == {"a.py", "alpha", "beta"}
        assert graph.file_node("p", "a.py").node_id == nodes[0].node_id
        assert graph.find_nodes("p", name="ALPHA", case_insensitive=True)[0].name == "alpha"

    def test_replace_is_idempotent(self, graph: GraphStore):
        _write_file(graph, "a.py", ["alpha"])
        first = graph.snapshot("p")
        _write_file(graph, "a.py", ["alpha"])
        assert graph.snapshot("p") == first

    def test_replace_returns_removed_ids(self, graph: GraphStore):
        nodes = _write_file(graph, "a.py", ["alpha", "beta"])
        f = nodes[0]
        removed = graph.replace_file("p", "a.py", [f, nodes[1]], [_defines(f, nodes[1])], [])
        assert removed == [nodes[2].node_id]

    def test_cross_file_reference_links_in_any_order(self, graph: GraphStore):
        """The caller may be stored before or after the callee."""
        caller = _write_file(graph, "b.py", ["use_it"], refs_to=["helper"])
        callee = _write_file(graph, "a.py", ["helper"])
        calls = graph.find_edges(caller[1].node_id, "out", [Relationship.CALLS])
        assert [e.to_id for e in calls] == [callee[1].node_id]

    def test_remove_file_drops_incident_edges(self, graph: GraphStore):
        caller = _write_file(graph, "b.py", ["use_it"], refs_to=["helper"])
        callee = _write_file(graph, "a.py", ["helper"])

        removed = graph.remove_file("p", "a.py")

        assert set(removed) == {n.node_id for n in callee}
        assert graph.find_edges(caller[1].node_id, "out", [Relationship.CALLS]) == []
        assert graph.check_consistency("p") == []
        # The reference survives and re-links when the callee comes back.
        back = _write_file(graph, "a.py", ["helper"])
        calls = graph.find_edges(caller[1].node_id, "out", [Relationship.CALLS])
        assert [e.to_id for e in calls] == [back[1].node_id]

    def test_dangling_edge_rolls_back(self, graph: GraphStore):
        f = _file("a.py")
        fn = _node("alpha", "a.py")
        ghost = Edge(fn.node_id, "function:missing", Relationship.CALLS, "p", "a.py")
        with pytest.raises(IndexCorruption):
            graph.replace_file("p", "a.py", [f, fn], [_defines(f, fn), ghost], [])
        assert graph.nodes_for_file("p", "a.py") == []

    def test_neighbors_depth_is_capped(self, graph: GraphStore):
        chain = []
        for i in range(6):
            chain.append(_node(f"n{i}", "c.py", line=i * 5 + 1))
        f = _file("c.py")
        edges = [_defines(f, chain[0])] + [
            Edge(chain[i].node_id, chain[i + 1].node_id, Relationship.CALLS, "p", "c.py")
            for i in range(5)
        ]
        graph.replace_file("p", "c.py", [f] + chain, edges, [])

        near = graph.neighbors(chain[0].node_id, depth=1, direction="out")
        assert [n.name for n, _ in near] == ["n1"]
        far = graph.neighbors(chain[0].node_id, depth=50, direction="out")
        assert max(d for _, d in far) == graph.settings.max_depth

    def test_shortest_path(self, graph: GraphStore):
        a, b = _node("a", "s.py", line=1), _node("b", "s.py", line=10)
        f = _file("s.py")
        graph.replace_file(
            "p", "s.py", [f, a, b],
            [_defines(f, a), _defines(f, b), Edge(a.node_id, b.node_id, Relationship.CALLS, "p", "s.py")],
            [],
        )
        assert [n.name for n in graph.shortest_path(a.node_id, b.node_id)] == ["a", "b"]
        assert graph.shortest_path(b.node_id, a.node_id) == []

    def test_unresolved_import_becomes_endpoint(self, graph: GraphStore):
        f = _file("m.py")
        ref = Reference(
            ref_id=make_ref_id(f.node_id, Relationship.IMPORTS, "missing", 1),
            from_id=f.node_id, relationship=Relationship.IMPORTS, target="missing",
            project_id="p", file_path="m.py", line=1, candidates=["missing.py"],
        )
        graph.replace_file("p", "m.py", [f], [], [ref])
        [edge] = graph.find_edges(f.node_id, "out", [Relationship.IMPORTS])
        assert graph.get_node(edge.to_id).kind == NodeKind.ENDPOINT

        # Once the module exists, the import re-links to its File node.
        target = _write_file(graph, "missing.py", ["thing"])
        [edge] = graph.find_edges(f.node_id, "out", [Relationship.IMPORTS])
        assert edge.to_id == target[0].node_id
        assert graph.check_consistency("p") == []

    def test_projects_and_stats(self, graph: GraphStore, temp_dir: Path):
        graph.record_project("p", temp_dir)
        assert graph.project_root("p") == temp_dir
        assert graph.list_projects() == {"p": str(temp_dir)}
        _write_file(graph, "a.py", ["alpha"])
        graph.record_file("p", "a.py", "python", "abc", 10, 1.0)
        stats = graph.graph_stats("p")
        assert stats["files"] == 1
        assert stats["nodes_by_kind"] == {"File": 1, "Function": 1}
        assert stats["edges_by_relationship"] == {"defines": 1}
        assert graph.file_record("p", "a.py")["content_hash"] == "abc"

    def test_clear_project_keeps_project_root(self, graph: GraphStore, temp_dir: Path):
        graph.record_project("p", temp_dir)
        _write_file(graph, "a.py", ["alpha"])
        graph.clear_project("p")
        assert graph.nodes_for_file("p", "a.py") == []
        assert graph.project_root("p") == temp_dir


class TestLowLevelWrites:
    """Tests for the batch write and maintenance primitives."""

    def test_upserts_are_idempotent(self, graph: GraphStore):
        f = _file("a.py")
        n = _node("alpha", "a.py", line=3)
        for _ in range(2):
            graph.upsert_nodes([f, n])
            graph.upsert_edges([_defines(f, n)])
        stats = graph.graph_stats("p")
        assert (stats["nodes"], stats["edges"]) == (2, 1)

    def test_delete_by_file_drops_touching_edges(self, graph: GraphStore):
        a = _write_file(graph, "a.py", ["alpha"])
        b = _write_file(graph, "b.py", ["beta"], refs_to=["alpha"])
        assert graph.find_edges(b[1].node_id, "out", [Relationship.CALLS])

        removed = graph.delete_by_file("a.py", "p")
        assert set(removed) == {n.node_id for n in a}
        assert graph.find_edges(b[1].node_id, "out", [Relationship.CALLS]) == []
        assert graph.check_consistency("p") == []

    def test_most_connected(self, graph: GraphStore):
        nodes = _write_file(graph, "a.py", ["alpha", "beta"])
        [(node, degree)] = graph.most_connected("p", limit=1)
        assert node.node_id == nodes[0].node_id
        assert degree == 2

    def test_orphaned_nodes(self, graph: GraphStore):
        _write_file(graph, "a.py", ["alpha"])
        graph.upsert_nodes([_node("lonely", "z.py")])
        assert [n.name for n in graph.orphaned_nodes("p")] == ["lonely"]
