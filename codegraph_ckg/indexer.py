"""Incremental indexer: file change events -> graph + chunk store updates.

Per-file state machine: ``queued -> extracting -> applying -> done | failed``.

- Events land on a bounded queue.  When it stays full for
  ``enqueue_timeout`` seconds the event is shed with a warning.
- Within a batch window, events are coalesced per ``(project_id, path)``:
  the last event wins, and content is read at apply time (a modify for a
  file that no longer exists is applied as a delete).
- Extraction (read, parse, extract, embed) runs on a thread pool.  Applying
  is sequential: one SQLite transaction swaps the file's nodes, edges,
  references and chunks, then vectors are written and orphans collected.
- A failed file is re-queued with exponential backoff, up to
  ``max_attempts``; other files in the batch are unaffected.  A newer event
  for the file cancels its pending retry.
- Embeddings deferred by an embedder outage are backfilled by the worker
  with the same backoff.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .chunk_store import SemanticChunkStore
from .config import IndexerSettings, StoreSettings
from .embeddings import EmbeddingService
from .errors import EmbedderUnavailable, IndexCorruption, StoreUnavailable
from .extraction import ExtractionPipeline
from .models import (
    ChangeState,
    Diagnostic,
    Embedding,
    EventType,
    ExtractionResult,
    FileChangeEvent,
    content_hash,
)
from .parser import SKIP_DIRS, detect_language
from .retry import backoff_delay, with_backoff
from .storage import GraphStore

logger = logging.getLogger(__name__)

EventKey = Tuple[str, str]


@dataclass
class BatchReport:
    """Outcome of one applied batch."""

    processed: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    retries: int = 0
    duration: float = 0.0

    def merge(self, other: "BatchReport") -> None:
        self.processed.extend(other.processed)
        self.deleted.extend(other.deleted)
        self.unchanged.extend(other.unchanged)
        self.skipped.extend(other.skipped)
        self.failed.update(other.failed)
        self.diagnostics.extend(other.diagnostics)
        self.retries += other.retries
        self.duration += other.duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": list(self.processed),
            "deleted": list(self.deleted),
            "unchanged": list(self.unchanged),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
            "diagnostics": [
                {"file_path": d.file_path, "message": d.message,
                 "severity": d.severity, "line": d.line}
                for d in self.diagnostics
            ],
            "retries": self.retries,
            "duration": round(self.duration, 3),
        }


@dataclass
class _Prepared:
    event: FileChangeEvent
    deleted: bool = False
    unchanged: bool = False
    result: Optional[ExtractionResult] = None
    embeddings: List[Embedding] = field(default_factory=list)
    digest: str = ""
    size: int = 0
    mtime: float = 0.0
    deferred: bool = False
    error: Optional[str] = None


class IncrementalIndexer:
    """Keeps the graph and chunk store in sync with file changes."""

    def __init__(
        self,
        graph: GraphStore,
        chunks: SemanticChunkStore,
        pipeline: ExtractionPipeline,
        embeddings: EmbeddingService,
        settings: Optional[IndexerSettings] = None,
        store_settings: Optional[StoreSettings] = None,
    ) -> None:
        self.graph = graph
        self.chunks = chunks
        self.pipeline = pipeline
        self.embeddings = embeddings
        self.settings = settings or IndexerSettings()
        self.store_settings = store_settings or StoreSettings()

        self._queue: "queue.Queue[FileChangeEvent]" = queue.Queue(maxsize=self.settings.queue_size)
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.workers(), thread_name_prefix="ckg-extract",
        )
        self._roots: Dict[str, Path] = {}
        self._states: Dict[EventKey, str] = {}
        self._attempts: Dict[EventKey, int] = {}
        self._retries: Dict[EventKey, Tuple[float, FileChangeEvent]] = {}
        self._backfill: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._apply_lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._shed = 0
        self._batches = 0
        self.last_report: Optional[BatchReport] = None

    # ------------------------------------------------------------------
    # Projects and paths
    # ------------------------------------------------------------------

    def register_project(self, project_id: str, root: Path) -> None:
        self._roots[project_id] = root.resolve()

    def root_for(self, project_id: str) -> Path:
        root = self._roots.get(project_id)
        if root is None:
            raise KeyError(f"Project '{project_id}' has no registered root")
        return root

    def relative_path(self, project_id: str, path: str) -> Optional[str]:
        """Project-relative POSIX path, or ``None`` for paths outside the root."""
        root = self.root_for(project_id)
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(root)
            except ValueError:
                return None
        rel = candidate.as_posix()
        if rel.startswith("./"):
            rel = rel[2:]
        return rel

    @staticmethod
    def is_indexable(rel_path: str) -> bool:
        parts = rel_path.split("/")
        if any(part in SKIP_DIRS or part.endswith(".egg-info") for part in parts[:-1]):
            return False
        return detect_language(rel_path) is not None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def submit(self, event: FileChangeEvent) -> bool:
        """Enqueue *event*; returns False when it was shed because the queue is full."""
        try:
            self._queue.put(event, timeout=self.settings.enqueue_timeout)
        except queue.Full:
            with self._lock:
                self._shed += 1
            logger.warning(
                "Index queue full (%d events); shedding %s event for %s",
                self._queue.maxsize, event.event_type, event.path,
            )
            return False
        with self._lock:
            self._states[(event.project_id, event.path)] = ChangeState.QUEUED
        return True

    def coalesce(self, events: Iterable[FileChangeEvent]) -> "OrderedDict[EventKey, FileChangeEvent]":
        """Last event per ``(project_id, path)`` wins, in first-seen order."""
        pending: "OrderedDict[EventKey, FileChangeEvent]" = OrderedDict()
        for event in events:
            rel = self.relative_path(event.project_id, event.path)
            if rel != event.path:
                with self._lock:
                    self._states.pop((event.project_id, event.path), None)
            if rel is None:
                logger.warning("Ignoring %s: outside project %s", event.path, event.project_id)
                continue
            if not self.is_indexable(rel):
                with self._lock:
                    self._states.pop((event.project_id, rel), None)
                continue
            normalized = FileChangeEvent(path=rel, project_id=event.project_id, event_type=event.event_type)
            key = (event.project_id, rel)
            pending[key] = normalized
            with self._lock:
                # A newer event for the file supersedes any scheduled retry.
                self._retries.pop(key, None)
            self._set_state(normalized, ChangeState.QUEUED)
        return pending

    def _drain(self) -> List[FileChangeEvent]:
        """Collect one batch window of events (plus due retries)."""
        events: List[FileChangeEvent] = []
        try:
            events.append(self._queue.get(timeout=0.2))
        except queue.Empty:
            pass
        if events:
            deadline = time.monotonic() + self.settings.batch_interval
            keys = {(events[0].project_id, events[0].path)}
            while len(keys) < self.settings.batch_size:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    event = self._queue.get(timeout=remaining)
                except queue.Empty:
                    break
                events.append(event)
                keys.add((event.project_id, event.path))

        now = time.monotonic()
        with self._lock:
            due = [key for key, (when, _) in self._retries.items() if when <= now]
            newer = {(e.project_id, e.path) for e in events}
            retry_events = []
            for key in due:
                _, event = self._retries.pop(key)
                if key in newer:
                    continue
                retry_events.append(event)
        return retry_events + events

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="ckg-indexer", daemon=True)
        self._worker.start()
        logger.info("Indexer worker started (%d extraction threads)", self.settings.workers())

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    def close(self) -> None:
        self.stop()
        self._pool.shutdown(wait=True)

    def _run(self) -> None:
        while not self._stop.is_set():
            batch = self._drain()
            if batch:
                try:
                    self.apply_changes(batch, inline_retries=False)
                except IndexCorruption as exc:
                    logger.error("Index corruption while applying changes: %s", exc)
                except Exception:
                    logger.exception("Indexer batch failed")
            self._backfill_due()

    def _defer_embeddings(self, project_id: str) -> None:
        with self._lock:
            if project_id not in self._backfill:
                self._backfill[project_id] = (
                    time.monotonic() + self.settings.retry_base_delay, 1,
                )

    def _backfill_due(self) -> None:
        """Retry deferred embeddings for projects whose backoff has elapsed."""
        now = time.monotonic()
        with self._lock:
            due = [(pid, attempt) for pid, (when, attempt) in self._backfill.items() if when <= now]
        for project_id, attempt in due:
            try:
                self.reembed_missing(project_id)
            except (EmbedderUnavailable, StoreUnavailable) as exc:
                delay = backoff_delay(attempt + 1, self.settings.retry_base_delay)
                logger.warning(
                    "Embedding backfill for %s failed (attempt %d): %s; retrying in %.2fs",
                    project_id, attempt, exc, delay,
                )
                with self._lock:
                    self._backfill[project_id] = (time.monotonic() + delay, attempt + 1)

    def pending_backfill(self) -> List[str]:
        """Projects with embeddings waiting for the embedder to come back."""
        with self._lock:
            return sorted(self._backfill)

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until the queue is drained and no retries are pending."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                busy = bool(self._retries) or any(
                    s in (ChangeState.QUEUED, ChangeState.EXTRACTING, ChangeState.APPLYING)
                    for s in self._states.values()
                )
            if self._queue.empty() and not busy:
                return True
            time.sleep(0.05)
        return False

    # ------------------------------------------------------------------
    # Batch application
    # ------------------------------------------------------------------

    def apply_changes(
        self, events: Iterable[FileChangeEvent], inline_retries: bool = True,
    ) -> BatchReport:
        """Coalesce and apply *events*.

        With ``inline_retries`` failed files are retried in place with
        backoff (used by full builds); otherwise they are scheduled for a
        later batch of the worker.

        Raises:
            IndexCorruption: after the rest of the batch is applied, if any
                file left dangling edges behind.  The exception carries the
                batch report as ``exc.report``.
        """
        started = time.monotonic()
        report = BatchReport()
        corrupted: List[IndexCorruption] = []
        pending = list(self.coalesce(events).values())
        with self._apply_lock:
            while pending:
                failed = self._process(pending, report, corrupted)
                retry: List[FileChangeEvent] = []
                for event, error in failed:
                    key = (event.project_id, event.path)
                    attempt = self._attempts.get(key, 0) + 1
                    self._attempts[key] = attempt
                    if attempt >= self.settings.max_attempts:
                        logger.error(
                            "Giving up on %s after %d attempts: %s", event.path, attempt, error,
                        )
                        report.failed[event.path] = error
                        self._attempts.pop(key, None)
                        continue
                    report.retries += 1
                    delay = backoff_delay(attempt, self.settings.retry_base_delay)
                    if inline_retries:
                        retry.append(event)
                    else:
                        report.failed[event.path] = error
                        with self._lock:
                            self._retries[key] = (time.monotonic() + delay, event)
                if retry:
                    time.sleep(backoff_delay(
                        self._attempts[(retry[0].project_id, retry[0].path)],
                        self.settings.retry_base_delay,
                    ))
                pending = retry
        self._batches += 1
        report.duration = time.monotonic() - started
        self.last_report = report
        if report.processed or report.deleted or report.failed:
            logger.info(
                "Applied batch: %d updated, %d deleted, %d unchanged, %d failed",
                len(report.processed), len(report.deleted), len(report.unchanged), len(report.failed),
            )
        if corrupted:
            raise IndexCorruption(
                "; ".join(str(e) for e in corrupted),
                dangling=sum(e.dangling for e in corrupted),
                report=report,
            )
        return report

    def _set_state(self, event: FileChangeEvent, state: str) -> None:
        with self._lock:
            self._states[(event.project_id, event.path)] = state

    def state_of(self, project_id: str, path: str) -> Optional[str]:
        with self._lock:
            return self._states.get((project_id, path))

    def _settled(self, event: FileChangeEvent) -> None:
        key = (event.project_id, event.path)
        self._attempts.pop(key, None)
        with self._lock:
            self._retries.pop(key, None)

    def _process(
        self,
        events: List[FileChangeEvent],
        report: BatchReport,
        corrupted: List[IndexCorruption],
    ) -> List[Tuple[FileChangeEvent, str]]:
        for event in events:
            self._set_state(event, ChangeState.EXTRACTING)
        prepared = list(self._pool.map(self._prepare, events))

        failed: List[Tuple[FileChangeEvent, str]] = []
        for prep in sorted(prepared, key=lambda p: (p.event.project_id, p.event.path)):
            event = prep.event
            path = event.path
            if prep.error is not None:
                self._set_state(event, ChangeState.FAILED)
                failed.append((event, prep.error))
                continue
            if prep.unchanged:
                self._set_state(event, ChangeState.DONE)
                self._settled(event)
                report.unchanged.append(path)
                continue
            if prep.result is not None:
                report.diagnostics.extend(prep.result.diagnostics)
                if not prep.result.ok or not prep.result.nodes:
                    # Parse errors and unsupported languages keep the previous state.
                    logger.warning("Skipping %s: %s", path, prep.result.error or "unsupported language")
                    self._set_state(event, ChangeState.DONE)
                    self._settled(event)
                    report.skipped.append(path)
                    continue

            self._set_state(event, ChangeState.APPLYING)
            try:
                with_backoff(
                    lambda: self._apply(prep),
                    attempts=self.store_settings.retry_attempts,
                    base_delay=self.store_settings.retry_base_delay,
                    retry_on=(StoreUnavailable,),
                    label=f"apply {path}",
                )
            except IndexCorruption as exc:
                self._set_state(event, ChangeState.FAILED)
                self._settled(event)
                report.failed[path] = str(exc)
                corrupted.append(exc)
                continue
            except StoreUnavailable as exc:
                self._set_state(event, ChangeState.FAILED)
                failed.append((event, str(exc)))
                continue

            if prep.deferred:
                self._defer_embeddings(event.project_id)
            self._set_state(event, ChangeState.DONE)
            self._settled(event)
            if prep.deleted:
                report.deleted.append(path)
            else:
                report.processed.append(path)
        return failed

    # ------------------------------------------------------------------
    # Extracting phase (thread pool, no mutation)
    # ------------------------------------------------------------------

    def _prepare(self, event: FileChangeEvent) -> _Prepared:
        prep = _Prepared(event=event)
        abs_path = self.root_for(event.project_id) / event.path
        # A delete for a file that is back on disk is applied as a modify.
        if event.event_type == EventType.DELETED and not abs_path.exists():
            prep.deleted = True
            return prep
        try:
            if not abs_path.is_file():
                prep.deleted = True
                return prep
            stat = abs_path.stat()
            prep.size, prep.mtime = stat.st_size, stat.st_mtime
            if prep.size > self.settings.max_file_bytes:
                prep.result = ExtractionResult(
                    file_path=event.path,
                    language=detect_language(event.path) or "unknown",
                    error=f"file larger than {self.settings.max_file_bytes} bytes",
                    diagnostics=[Diagnostic(event.path, "file too large; skipped")],
                )
                return prep
            source = abs_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            prep.deleted = True
            return prep
        except OSError as exc:
            prep.error = f"cannot read {event.path}: {exc}"
            return prep

        prep.digest = content_hash(source)
        try:
            record = self.graph.file_record(event.project_id, event.path)
        except StoreUnavailable as exc:
            prep.error = str(exc)
            return prep
        if record is not None and record["content_hash"] == prep.digest:
            prep.unchanged = True
            return prep

        prep.result = self.pipeline.extract_source(event.path, source, event.project_id)
        if not prep.result.ok or not prep.result.chunks:
            return prep
        try:
            prep.embeddings = self._embed(prep.result)
        except EmbedderUnavailable as exc:
            # Graph updates go ahead; vectors are backfilled by reembed_missing().
            logger.warning("Embedding deferred for %s: %s", event.path, exc)
            prep.deferred = True
            prep.result.diagnostics.append(
                Diagnostic(event.path, f"embedding deferred: {exc}")
            )
        except StoreUnavailable as exc:
            prep.error = str(exc)
        return prep

    def _embed(self, result: ExtractionResult) -> List[Embedding]:
        model = self.embeddings.model_key
        existing = self.chunks.embedded_hashes([c.chunk_id for c in result.chunks], model)
        todo = [c for c in result.chunks if existing.get(c.chunk_id) != c.content_hash]
        if not todo:
            return []
        vectors = self.embeddings.embed_many([c.content for c in todo])
        return [
            Embedding(chunk_id=c.chunk_id, vector=v, model=model, content_hash=c.content_hash)
            for c, v in zip(todo, vectors)
        ]

    # ------------------------------------------------------------------
    # Applying phase (sequential)
    # ------------------------------------------------------------------

    def _apply(self, prep: _Prepared) -> None:
        event = prep.event
        project_id, path = event.project_id, event.path
        db = self.graph.db
        if prep.deleted:
            with db.transaction():
                removed = self.graph.remove_file(project_id, path)
                self.chunks.delete_by_nodes(removed)
            self.chunks.vectors.delete_orphans(project_id, path, keep=[])
            logger.debug("Deleted %s from %s", path, project_id)
            return

        result = prep.result
        assert result is not None
        with db.transaction():
            self.graph.replace_file(project_id, path, result.nodes, result.edges, result.refs)
            self.chunks.replace_file_chunks(project_id, path, result.chunks)
            self.graph.record_file(
                project_id, path, result.language, prep.digest, prep.size, prep.mtime,
            )
        self.chunks.upsert_embeddings(prep.embeddings)
        self.chunks.vectors.delete_orphans(
            project_id, path, keep=[c.chunk_id for c in result.chunks],
        )
        logger.debug(
            "Indexed %s: %d nodes, %d edges, %d chunks",
            path, len(result.nodes), len(result.edges), len(result.chunks),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reembed_missing(self, project_id: str) -> int:
        """Embed chunks that have no current vector for the active model."""
        model = self.embeddings.model_key
        done = 0
        batch_size = max(1, self.embeddings.batch_size * 8)
        with self._apply_lock:
            missing = self.chunks.missing_embeddings(project_id, model)
            for start in range(0, len(missing), batch_size):
                batch = missing[start:start + batch_size]
                vectors = self.embeddings.embed_many([c.content for c in batch])
                done += self.chunks.upsert_embeddings([
                    Embedding(chunk_id=c.chunk_id, vector=v, model=model, content_hash=c.content_hash)
                    for c, v in zip(batch, vectors)
                ])
            with self._lock:
                self._backfill.pop(project_id, None)
        if done:
            logger.info("Backfilled %d embeddings for %s", done, project_id)
        return done

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            states: Dict[str, int] = {}
            for state in self._states.values():
                states[state] = states.get(state, 0) + 1
            return {
                "queued": self._queue.qsize(),
                "shed": self._shed,
                "batches": self._batches,
                "pending_retries": len(self._retries),
                "pending_backfill": len(self._backfill),
                "states": states,
                "running": self._worker is not None and self._worker.is_alive(),
            }
