"""File watcher feeding change events into the incremental indexer."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import WatcherDisconnected
from .models import EventType, FileChangeEvent
from .parser import SKIP_DIRS, detect_language

logger = logging.getLogger(__name__)


class ChangeHandler(FileSystemEventHandler):
    """Maps watchdog events onto :class:`FileChangeEvent` submissions.

    A move is reported as a delete of the old path followed by a create of
    the new one.  Directories, files in skipped directories and files in
    unknown languages are ignored.
    """

    def __init__(self, root: Path, project_id: str, submit: Callable[[FileChangeEvent], bool]) -> None:
        super().__init__()
        self.root = root.resolve()
        self.project_id = project_id
        self.submit = submit

    def _relative(self, raw_path) -> Optional[str]:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        try:
            rel = Path(raw_path).resolve().relative_to(self.root)
        except ValueError:
            return None
        parts = rel.parts
        if any(part in SKIP_DIRS or part.startswith(".") for part in parts[:-1]):
            return None
        if detect_language(rel.as_posix()) is None:
            return None
        return rel.as_posix()

    def _emit(self, raw_path, event_type: str) -> None:
        rel = self._relative(raw_path)
        if rel is None:
            return
        logger.debug("%s %s", event_type, rel)
        self.submit(FileChangeEvent(path=rel, project_id=self.project_id, event_type=event_type))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, EventType.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, EventType.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, EventType.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, EventType.DELETED)
            self._emit(event.dest_path, EventType.CREATED)


class FileWatcher:
    """Recursive watch of one project root.

    ``on_reconnect`` is called after the observer had to be restarted, so
    the caller can rescan for changes missed while disconnected.
    """

    def __init__(
        self,
        root: Path,
        project_id: str,
        submit: Callable[[FileChangeEvent], bool],
        on_reconnect: Optional[Callable[[], None]] = None,
    ) -> None:
        self.root = root.resolve()
        self.project_id = project_id
        self.handler = ChangeHandler(self.root, project_id, submit)
        self.on_reconnect = on_reconnect
        self._observer: Optional[Observer] = None
        self._wanted = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            if not self.root.is_dir():
                raise WatcherDisconnected(f"Watch root does not exist: {self.root}")
            observer = Observer()
            try:
                observer.schedule(self.handler, str(self.root), recursive=True)
                observer.start()
            except OSError as exc:
                raise WatcherDisconnected(f"Cannot watch {self.root}: {exc}") from exc
            self._observer = observer
            self._wanted = True
        logger.info("Watching %s (project %s)", self.root, self.project_id)

    def stop(self) -> None:
        self._wanted = False
        self._shutdown()

    def _shutdown(self) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def ensure_running(self) -> bool:
        """Restart a dead observer.  Returns True when a restart happened."""
        if self.running or not self._wanted:
            return False
        logger.warning("File watcher for %s disconnected; restarting", self.root)
        self._shutdown()
        self.start()
        if self.on_reconnect is not None:
            self.on_reconnect()
        return True
