"""Tests for the LanceDB vector index."""

from pathlib import Path

from codegraph_ckg.vector_store import VectorIndex, table_name


def _row(chunk_id: str, vector, file_path: str = "a.py", project_id: str = "p"):
    return {
        "chunk_id": chunk_id,
        "project_id": project_id,
        "file_path": file_path,
        "node_id": "function:" + chunk_id,
        "content_hash": "h-" + chunk_id,
        "vector": vector,
    }


class TestVectorIndex:
    """Test VectorIndex functionality."""

    def test_init(self, temp_dir: Path):
        index = VectorIndex(temp_dir / "lancedb")
        assert (temp_dir / "lancedb").exists()
        assert index.list_models() == []
        assert index.count("hash") == 0
        assert index.search("hash", [1.0, 0.0, 0.0], "p") == []

    def test_table_name_is_sanitised(self):
        assert table_name("remote-text-embedding-3-small") == "chunks_remote_text_embedding_3_small"

    def test_upsert_replaces_by_chunk_id(self, vector_index: VectorIndex):
        vector_index.upsert("m", [_row("c1", [1.0, 0.0, 0.0]), _row("c2", [0.0, 1.0, 0.0])])
        vector_index.upsert("m", [_row("c1", [0.0, 0.0, 1.0])])
        assert vector_index.count("m") == 2

    def test_search_orders_by_cosine_score(self, vector_index: VectorIndex):
        vector_index.upsert("m", [
            _row("same", [1.0, 0.0, 0.0]),
            _row("close", [0.9, 0.1, 0.0]),
            _row("far", [0.0, 1.0, 0.0]),
        ])
        rows = vector_index.search("m", [1.0, 0.0, 0.0], "p", limit=3)
        assert [r["chunk_id"] for r in rows] == ["same", "close", "far"]
        assert abs(rows[0]["score"] - 1.0) < 1e-5
        assert abs(rows[2]["score"]) < 1e-5

    def test_search_is_scoped_to_project(self, vector_index: VectorIndex):
        vector_index.upsert("m", [
            _row("mine", [1.0, 0.0], project_id="p"),
            _row("theirs", [1.0, 0.0], project_id="q"),
        ])
        assert [r["chunk_id"] for r in vector_index.search("m", [1.0, 0.0], "p")] == ["mine"]
        assert vector_index.count("m", "q") == 1

    def test_delete_orphans_keeps_listed_chunks(self, vector_index: VectorIndex):
        vector_index.upsert("m", [
            _row("keep", [1.0, 0.0]),
            _row("drop", [0.0, 1.0]),
            _row("other", [1.0, 1.0], file_path="b.py"),
        ])
        vector_index.delete_orphans("p", "a.py", keep=["keep"])
        ids = {r["chunk_id"] for r in vector_index.search("m", [1.0, 0.5], "p", limit=10)}
        assert ids == {"keep", "other"}

    def test_delete_chunks_across_models(self, vector_index: VectorIndex):
        vector_index.upsert("m1", [_row("c1", [1.0, 0.0])])
        vector_index.upsert("m2", [_row("c1", [1.0, 0.0, 0.0])])
        vector_index.delete_chunks(["c1"])
        assert vector_index.count("m1") == 0
        assert vector_index.count("m2") == 0

    def test_drop_project(self, vector_index: VectorIndex):
        vector_index.upsert("m", [_row("a", [1.0, 0.0]), _row("b", [1.0, 0.0], project_id="q")])
        vector_index.drop_project("p")
        assert vector_index.count("m", "p") == 0
        assert vector_index.count("m", "q") == 1
