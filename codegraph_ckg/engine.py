"""``CodeKnowledgeGraph``: the engine facade wiring stores, indexer and queries."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .chunk_store import SemanticChunkStore
from .config import DATA_DIR, Settings, load_settings
from .context import ContextBuilder, ContextOptions
from .embeddings import EmbeddingService, get_embedder
from .errors import EmbedderUnavailable, IndexCorruption, StoreUnavailable
from .extraction import ExtractionPipeline
from .graph_export import export_graph
from .indexer import BatchReport, IncrementalIndexer
from .models import ContextPayload, Edge, EventType, FileChangeEvent, ImpactReport, Node
from .parser import LanguageRegistry, iter_source_files
from .retry import with_backoff
from .storage import Database, GraphStore
from .symbolic import SymbolicIndex
from .vector_store import VectorIndex
from .watcher import FileWatcher

logger = logging.getLogger(__name__)


class CodeKnowledgeGraph:
    """One engine instance per data directory.

    Example::

        with CodeKnowledgeGraph() as ckg:
            ckg.build_index("shop", Path("~/src/shop").expanduser())
            payload = ckg.build_context("checkout total", "shop", max_tokens=2000)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        data_dir: Optional[Path] = None,
        embedder: Optional[Any] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.data_dir = data_dir or DATA_DIR
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.db = Database(self.data_dir / "graph.db", busy_timeout=self.settings.store.busy_timeout)
        self.graph = GraphStore(self.db, self.settings.store)
        self.vectors = VectorIndex(self.data_dir / "lancedb")
        self.chunks = SemanticChunkStore(self.db, self.vectors)
        self.registry = LanguageRegistry(self.settings.languages)
        self.pipeline = ExtractionPipeline(self.registry, self.settings.indexer.max_chunk_tokens)

        if embedder is None:
            embedder = get_embedder(self.settings.embeddings, cache_dir=self.data_dir / "models")
        self.embeddings = EmbeddingService(
            embedder,
            timeout=self.settings.embeddings.timeout,
            batch_size=self.settings.embeddings.batch_size,
        )
        self.symbols = SymbolicIndex(self.graph)
        self.indexer = IncrementalIndexer(
            self.graph, self.chunks, self.pipeline, self.embeddings,
            settings=self.settings.indexer, store_settings=self.settings.store,
        )
        self.context = ContextBuilder(
            self.graph, self.chunks, self.symbols, self.embeddings, self.settings.context,
        )
        self._watchers: Dict[str, FileWatcher] = {}

        for project_id, root in self.graph.list_projects().items():
            self.indexer.register_project(project_id, Path(root))

    def __enter__(self) -> "CodeKnowledgeGraph":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _retry(self, fn, label: str):
        return with_backoff(
            fn,
            attempts=self.settings.store.retry_attempts,
            base_delay=self.settings.store.retry_base_delay,
            retry_on=(StoreUnavailable,),
            label=label,
        )

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def build_index(self, project_id: str, root_path: Path, incremental: bool = True) -> BatchReport:
        """Index every supported file under *root_path*.

        Incremental builds re-extract only files whose content hash changed
        and delete files that disappeared.  A full build clears the project
        first.  ``StoreUnavailable`` propagates once retries are exhausted.
        ``IndexCorruption`` is raised after every batch has been applied if
        any file left dangling edges; its ``report`` holds the batch results.
        """
        root = Path(root_path).expanduser().resolve()
        if not root.is_dir():
            raise FileNotFoundError(f"Project root not found: {root}")

        self._retry(lambda: self.graph.record_project(project_id, root), "record project")
        self.indexer.register_project(project_id, root)
        if not incremental:
            logger.info("Full rebuild of %s: clearing previous index", project_id)
            self._retry(lambda: self.graph.clear_project(project_id), "clear graph")
            self._retry(lambda: self.chunks.clear_project(project_id), "clear chunks")

        events = self._scan_events(project_id, root)
        report = BatchReport()
        corrupted: List[IndexCorruption] = []
        batch_size = max(1, self.settings.indexer.batch_size)
        for start in range(0, len(events), batch_size):
            try:
                report.merge(self.indexer.apply_changes(events[start:start + batch_size]))
            except IndexCorruption as exc:
                corrupted.append(exc)
                if exc.report is not None:
                    report.merge(exc.report)
        if corrupted:
            raise IndexCorruption(
                "; ".join(str(e) for e in corrupted),
                dangling=sum(e.dangling for e in corrupted),
                report=report,
            )

        try:
            self.indexer.reembed_missing(project_id)
        except EmbedderUnavailable as exc:
            logger.warning("Embeddings for %s left incomplete: %s", project_id, exc)

        logger.info(
            "Indexed %s: %d updated, %d deleted, %d unchanged, %d skipped, %d failed",
            project_id, len(report.processed), len(report.deleted), len(report.unchanged),
            len(report.skipped), len(report.failed),
        )
        return report

    def _scan_events(self, project_id: str, root: Path) -> List[FileChangeEvent]:
        present = [
            path.relative_to(root).as_posix()
            for path in iter_source_files(root)
        ]
        known = self._retry(lambda: self.graph.list_files(project_id), "list files")
        events = [
            FileChangeEvent(path=rel, project_id=project_id, event_type=EventType.MODIFIED)
            for rel in present
        ]
        gone = sorted(set(known) - set(present))
        events.extend(
            FileChangeEvent(path=rel, project_id=project_id, event_type=EventType.DELETED)
            for rel in gone
        )
        return events

    def watch(self, project_id: str, root_path: Optional[Path] = None) -> FileWatcher:
        """Catch up with an incremental build, then follow file changes."""
        root = Path(root_path) if root_path is not None else self.graph.project_root(project_id)
        if root is None:
            raise ValueError(f"Unknown project '{project_id}'; pass a root path")
        self.build_index(project_id, root, incremental=True)
        self.indexer.start()

        def rescan() -> None:
            logger.info("Rescanning %s after watcher reconnect", project_id)
            for event in self._scan_events(project_id, root.resolve()):
                self.indexer.submit(event)

        watcher = FileWatcher(root, project_id, self.indexer.submit, on_reconnect=rescan)
        watcher.start()
        self._watchers[project_id] = watcher
        return watcher

    def check_watchers(self) -> None:
        for watcher in self._watchers.values():
            watcher.ensure_running()

    def unwatch(self, project_id: str) -> None:
        watcher = self._watchers.pop(project_id, None)
        if watcher is not None:
            watcher.stop()
        if not self._watchers:
            self.indexer.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def build_context(
        self,
        query: str,
        project_id: str,
        max_tokens: Optional[int] = None,
        options: Optional[ContextOptions] = None,
    ) -> ContextPayload:
        return self.context.build_context(query, project_id, max_tokens, options)

    def find_definitions(self, symbol_name: str, project_id: str, hint_file: Optional[str] = None) -> List[Node]:
        return self.symbols.find_definitions(symbol_name, project_id, hint_file)

    def find_references(self, symbol_name: str, project_id: str) -> List[Edge]:
        return self.symbols.find_references(symbol_name, project_id)

    def analyze_impact(self, symbol_name: str, project_id: str) -> ImpactReport:
        return self.symbols.analyze_impact(symbol_name, project_id)

    def find_unused_exports(self, project_id: str) -> List[Node]:
        return self.symbols.find_unused_exports(project_id)

    def find_circular_dependencies(self, project_id: str) -> List[List[Node]]:
        return self.symbols.find_circular_dependencies(project_id)

    def find_missing_imports(self, file_path: str, project_id: str) -> List[Node]:
        return self.symbols.find_missing_imports(file_path, project_id)

    def analyze_connectivity(self, project_id: str) -> Dict[str, Any]:
        return self.symbols.analyze_connectivity(project_id)

    def export_graph(self, project_id: str, fmt: str = "json", focus: str = "") -> str:
        return export_graph(self.graph, project_id, fmt, focus)

    def search_symbols(self, query: str, project_id: str, limit: int = 20) -> List[Tuple[Node, float]]:
        return self.symbols.search_symbols(query, project_id, limit=limit)

    def neighbors(self, node_id: str, depth: int = 1) -> List[Tuple[Node, int]]:
        return self.graph.neighbors(node_id, depth=depth)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def verify(self, project_id: str) -> Dict[str, Any]:
        """Project-wide integrity scan.  Raises :class:`IndexCorruption` on dangling edges."""
        dangling = self.graph.check_consistency(project_id)
        if dangling:
            logger.error("Project %s has %d dangling edges", project_id, len(dangling))
            raise IndexCorruption(
                f"{len(dangling)} dangling edges in project {project_id}", dangling=len(dangling),
            )
        missing = self.chunks.missing_embeddings(project_id, self.embeddings.model_key)
        return {
            "project_id": project_id,
            "dangling_edges": 0,
            "missing_embeddings": len(missing),
            "orphaned_nodes": len(self.graph.orphaned_nodes(project_id)),
        }

    def stats(self, project_id: str) -> Dict[str, Any]:
        return {
            "project_id": project_id,
            "root": str(self.graph.project_root(project_id) or ""),
            "graph": self.graph.graph_stats(project_id),
            "chunks": self.chunks.stats(project_id),
            "vectors": self.vectors.count(self.embeddings.model_key, project_id),
            "embedding_model": self.embeddings.model_key,
            "indexer": self.indexer.stats(),
        }

    def projects(self) -> Dict[str, str]:
        return self.graph.list_projects()

    def close(self) -> None:
        for project_id in list(self._watchers):
            self.unwatch(project_id)
        self.indexer.close()
        self.embeddings.close()
        self.db.close()
