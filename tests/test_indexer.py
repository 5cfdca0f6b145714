"""Tests for the incremental indexer."""

import time
from pathlib import Path
from unittest import mock

import pytest

from codegraph_ckg.config import IndexerSettings
from codegraph_ckg.embeddings import HashEmbeddingModel
from codegraph_ckg.engine import CodeKnowledgeGraph
from codegraph_ckg.errors import EmbedderUnavailable, IndexCorruption, StoreUnavailable
from codegraph_ckg.indexer import IncrementalIndexer
from codegraph_ckg.models import ChangeState, Edge, EventType, FileChangeEvent, Relationship


def _event(path: str, event_type: str = EventType.MODIFIED, project_id: str = "sample") -> FileChangeEvent:
    return FileChangeEvent(path=path, project_id=project_id, event_type=event_type)


class TestCoalescing:
    """Tests for batching and path normalisation."""

    def test_last_event_wins(self, engine: CodeKnowledgeGraph, project_dir: Path):
        engine.indexer.register_project("sample", project_dir)
        pending = engine.indexer.coalesce([
            _event("utils.py"),
            _event("main.py", EventType.CREATED),
            _event("utils.py", EventType.DELETED),
        ])
        assert list(pending) == [("sample", "utils.py"), ("sample", "main.py")]
        assert pending[("sample", "utils.py")].event_type == EventType.DELETED

    def test_paths_are_normalised_and_filtered(self, engine: CodeKnowledgeGraph, project_dir: Path, temp_dir: Path):
        engine.indexer.register_project("sample", project_dir)
        pending = engine.indexer.coalesce([
            _event(str(project_dir / "web" / "cart.js")),
            _event("./utils.py"),
            _event(str(temp_dir / "elsewhere.py")),
            _event("README.md"),
            _event("node_modules/lib/index.js"),
        ])
        assert [path for _, path in pending] == ["web/cart.js", "utils.py"]

    def test_unknown_project_is_rejected(self, engine: CodeKnowledgeGraph):
        with pytest.raises(KeyError, match="ghost"):
            engine.indexer.root_for("ghost")


class TestApply:
    """Tests for applying batches to the stores."""

    def test_full_rebuild_is_idempotent(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path):
        before = indexed_engine.graph.snapshot("sample")
        indexed_engine.build_index("sample", project_dir, incremental=False)
        assert indexed_engine.graph.snapshot("sample") == before

    def test_unchanged_files_are_reported(self, indexed_engine: CodeKnowledgeGraph):
        report = indexed_engine.indexer.apply_changes([_event("utils.py")])
        assert report.unchanged == ["utils.py"]
        assert report.processed == []
        assert indexed_engine.indexer.state_of("sample", "utils.py") == ChangeState.DONE

    def test_replayed_delete_is_harmless(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path):
        (project_dir / "main.py").unlink()
        first = indexed_engine.indexer.apply_changes([_event("main.py", EventType.DELETED)])
        snapshot = indexed_engine.graph.snapshot("sample")
        second = indexed_engine.indexer.apply_changes([_event("main.py", EventType.DELETED)])
        assert first.deleted == second.deleted == ["main.py"]
        assert indexed_engine.graph.snapshot("sample") == snapshot

    def test_modify_of_missing_file_applies_as_delete(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path):
        (project_dir / "main.py").unlink()
        report = indexed_engine.indexer.apply_changes([_event("main.py")])
        assert report.deleted == ["main.py"]
        assert indexed_engine.find_definitions("main", "sample") == []

    def test_delete_cascades(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, write_source):
        engine = indexed_engine
        vectors_before = engine.vectors.count("hash", "sample")
        utils_source = (project_dir / "utils.py").read_text(encoding="utf-8")
        (project_dir / "utils.py").unlink()

        report = engine.build_index("sample", project_dir)
        assert report.deleted == ["utils.py"]
        assert engine.find_definitions("apply_tax", "sample") == []
        assert engine.find_references("apply_tax", "sample") == []
        assert engine.chunks.chunks_for_file("sample", "utils.py") == []
        assert engine.vectors.count("hash", "sample") < vectors_before
        assert engine.graph.check_consistency("sample") == []

        # Restoring the file re-links the caller that was left dangling.
        write_source(project_dir, "utils.py", utils_source)
        engine.build_index("sample", project_dir)
        [ref] = engine.find_references("apply_tax", "sample")
        assert ref.file_path == "inventory.py"

    def test_incremental_matches_full_build(
        self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, temp_dir: Path, settings, write_source,
    ):
        write_source(project_dir, "utils.py", (project_dir / "utils.py").read_text(encoding="utf-8")
                     .replace("def legacy_discount", "def old_discount"))
        write_source(project_dir, "checkout.py", "from utils import old_discount\n\n\ndef pay(x):\n    return old_discount(x)\n")
        (project_dir / "web" / "types.ts").unlink()
        indexed_engine.build_index("sample", project_dir)

        fresh = CodeKnowledgeGraph(settings=settings, data_dir=temp_dir / "fresh", embedder=HashEmbeddingModel())
        try:
            fresh.build_index("sample", project_dir, incremental=False)
            assert indexed_engine.graph.snapshot("sample") == fresh.graph.snapshot("sample")
        finally:
            fresh.close()

    def test_parse_error_keeps_previous_state(self, indexed_engine: CodeKnowledgeGraph, write_source, project_dir: Path):
        before = indexed_engine.graph.snapshot("sample")
        write_source(project_dir, "utils.py", "def apply_tax(:\n")
        report = indexed_engine.indexer.apply_changes([_event("utils.py")])
        assert report.skipped == ["utils.py"]
        assert any(d.severity == "error" for d in report.diagnostics)
        assert indexed_engine.graph.snapshot("sample") == before
        assert indexed_engine.find_definitions("apply_tax", "sample")

    def test_store_failure_is_isolated_to_one_file(
        self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, write_source,
    ):
        engine = indexed_engine
        write_source(project_dir, "utils.py", "def apply_tax(amount):\n    return amount\n")
        write_source(project_dir, "main.py", "def main():\n    return 0\n")
        original = engine.graph.replace_file

        def flaky(project_id, file_path, *args, **kwargs):
            if file_path == "utils.py":
                raise StoreUnavailable("database is locked")
            return original(project_id, file_path, *args, **kwargs)

        with mock.patch.object(engine.graph, "replace_file", side_effect=flaky):
            report = engine.indexer.apply_changes([_event("utils.py"), _event("main.py")])

        assert report.processed == ["main.py"]
        assert "utils.py" in report.failed
        assert report.retries == engine.settings.indexer.max_attempts - 1
        assert engine.indexer.state_of("sample", "utils.py") == ChangeState.FAILED
        # The old definition survives the failed apply.
        [node] = engine.find_definitions("apply_tax", "sample")
        assert node.metadata["signature"] == "def apply_tax(amount: float) -> float:"
        assert engine.graph.check_consistency("sample") == []

    def test_delete_of_existing_file_applies_as_modify(self, indexed_engine: CodeKnowledgeGraph):
        report = indexed_engine.indexer.apply_changes([_event("main.py", EventType.DELETED)])
        assert report.deleted == []
        assert report.unchanged == ["main.py"]
        assert indexed_engine.find_definitions("main", "sample")

    def test_newer_event_cancels_scheduled_retry(
        self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, write_source,
    ):
        indexer = indexed_engine.indexer
        (project_dir / "main.py").unlink()
        with mock.patch.object(
            indexed_engine.graph, "remove_file", side_effect=StoreUnavailable("database is locked"),
        ):
            report = indexer.apply_changes([_event("main.py", EventType.DELETED)], inline_retries=False)
        assert "main.py" in report.failed
        assert indexer.stats()["pending_retries"] == 1

        write_source(project_dir, "main.py", "def main():\n    return 1\n")
        report = indexer.apply_changes([_event("main.py", EventType.CREATED)], inline_retries=False)
        assert report.processed == ["main.py"]
        assert indexer.stats()["pending_retries"] == 0

        time.sleep(0.1)
        assert indexer._drain() == []
        assert indexed_engine.find_definitions("main", "sample")

    def test_corruption_is_raised_after_the_batch(self, engine: CodeKnowledgeGraph, project_dir: Path):
        ghost = Edge(
            from_id="sample::utils.py", to_id="sample::ghost", relationship=Relationship.CALLS,
            project_id="sample", file_path="utils.py",
        )
        original = engine.graph.dangling_edges

        def dangling(project_id, file_path=None):
            if file_path == "utils.py":
                return [ghost]
            return original(project_id, file_path)

        with mock.patch.object(engine.graph, "dangling_edges", side_effect=dangling):
            with pytest.raises(IndexCorruption) as exc:
                engine.build_index("sample", project_dir)

        assert exc.value.dangling == 1
        report = exc.value.report
        assert "utils.py" in report.failed
        assert "main.py" in report.processed
        # The corrupting apply was rolled back.
        assert engine.find_definitions("apply_tax", "sample") == []
        assert engine.find_definitions("main", "sample")


class TestEmbeddings:
    def test_embedder_outage_defers_vectors(self, engine: CodeKnowledgeGraph, project_dir: Path):
        with mock.patch.object(engine.embeddings, "embed_many", side_effect=EmbedderUnavailable("down")):
            report = engine.build_index("sample", project_dir)

        assert "utils.py" in report.processed
        assert any("embedding deferred" in d.message for d in report.diagnostics)
        assert engine.find_definitions("apply_tax", "sample")
        missing = engine.chunks.missing_embeddings("sample", "hash")
        assert missing

        assert engine.indexer.reembed_missing("sample") == len(missing)
        assert engine.chunks.missing_embeddings("sample", "hash") == []

    def test_unchanged_chunks_are_not_reembedded(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, write_source):
        source = (project_dir / "utils.py").read_text(encoding="utf-8")
        write_source(project_dir, "utils.py", source.replace("return amount * 0.9", "return amount * 0.8"))
        with mock.patch.object(
            indexed_engine.embeddings, "embed_many", wraps=indexed_engine.embeddings.embed_many,
        ) as spy:
            indexed_engine.indexer.apply_changes([_event("utils.py")])
        texts = spy.call_args[0][0]
        assert len(texts) == 1
        assert "0.8" in texts[0]

    def test_worker_backfills_deferred_vectors(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, write_source):
        engine = indexed_engine
        original = engine.embeddings.embed_many
        state = {"down": True}

        def flaky(texts, timeout=None):
            if state["down"]:
                raise EmbedderUnavailable("connection refused")
            return original(texts, timeout=timeout)

        with mock.patch.object(engine.embeddings, "embed_many", side_effect=flaky):
            engine.indexer.start()
            try:
                write_source(project_dir, "shipping.py", "def shipping_cost(weight):\n    return weight * 2\n")
                assert engine.indexer.submit(_event("shipping.py", EventType.CREATED))
                assert engine.indexer.wait_idle(timeout=15)
                assert engine.find_definitions("shipping_cost", "sample")
                assert engine.chunks.missing_embeddings("sample", "hash")
                assert engine.indexer.pending_backfill() == ["sample"]

                state["down"] = False
                deadline = time.monotonic() + 20
                while time.monotonic() < deadline and engine.indexer.pending_backfill():
                    time.sleep(0.05)
            finally:
                engine.indexer.stop()

        assert engine.indexer.pending_backfill() == []
        assert engine.chunks.missing_embeddings("sample", "hash") == []


class TestQueue:
    """Tests for the bounded queue and the background worker."""

    def test_full_queue_sheds_events(self, engine: CodeKnowledgeGraph, project_dir: Path):
        indexer = IncrementalIndexer(
            engine.graph, engine.chunks, engine.pipeline, engine.embeddings,
            settings=IndexerSettings(queue_size=1, enqueue_timeout=0.01, pool_size=1),
        )
        try:
            indexer.register_project("sample", project_dir)
            assert indexer.submit(_event("utils.py"))
            assert not indexer.submit(_event("main.py"))
            stats = indexer.stats()
            assert stats["shed"] == 1
            assert stats["queued"] == 1
            assert indexer.state_of("sample", "utils.py") == ChangeState.QUEUED
            assert indexer.state_of("sample", "main.py") is None
        finally:
            indexer.close()

    def test_worker_applies_submitted_events(self, indexed_engine: CodeKnowledgeGraph, project_dir: Path, write_source):
        engine = indexed_engine
        engine.indexer.start()
        write_source(project_dir, "shipping.py", "def shipping_cost(weight):\n    return weight * 2\n")
        assert engine.indexer.submit(_event("shipping.py", EventType.CREATED))
        assert engine.indexer.submit(_event("shipping.py", EventType.MODIFIED))
        assert engine.indexer.wait_idle(timeout=15)

        assert engine.find_definitions("shipping_cost", "sample")
        assert engine.indexer.state_of("sample", "shipping.py") == ChangeState.DONE
        assert engine.indexer.stats()["running"]
        engine.indexer.stop()
        assert not engine.indexer.stats()["running"]
