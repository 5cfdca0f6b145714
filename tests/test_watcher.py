"""Tests for the file watcher."""

import time
from pathlib import Path
from typing import List

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from codegraph_ckg.errors import WatcherDisconnected
from codegraph_ckg.models import EventType, FileChangeEvent
from codegraph_ckg.watcher import ChangeHandler, FileWatcher


class _Recorder:
    def __init__(self) -> None:
        self.events: List[FileChangeEvent] = []

    def __call__(self, event: FileChangeEvent) -> bool:
        self.events.append(event)
        return True

    def pairs(self):
        return [(e.event_type, e.path) for e in self.events]


class TestChangeHandler:
    """Tests for mapping watchdog events."""

    def test_basic_events(self, temp_dir: Path):
        recorder = _Recorder()
        handler = ChangeHandler(temp_dir, "p", recorder)
        handler.on_created(FileCreatedEvent(str(temp_dir / "a.py")))
        handler.on_modified(FileModifiedEvent(str(temp_dir / "src" / "b.ts")))
        handler.on_deleted(FileDeletedEvent(str(temp_dir / "c.js")))
        assert recorder.pairs() == [
            (EventType.CREATED, "a.py"),
            (EventType.MODIFIED, "src/b.ts"),
            (EventType.DELETED, "c.js"),
        ]
        assert {e.project_id for e in recorder.events} == {"p"}

    def test_move_is_delete_then_create(self, temp_dir: Path):
        recorder = _Recorder()
        handler = ChangeHandler(temp_dir, "p", recorder)
        handler.on_moved(FileMovedEvent(str(temp_dir / "old.py"), str(temp_dir / "pkg" / "new.py")))
        assert recorder.pairs() == [(EventType.DELETED, "old.py"), (EventType.CREATED, "pkg/new.py")]

    def test_move_to_unknown_extension_only_deletes(self, temp_dir: Path):
        recorder = _Recorder()
        handler = ChangeHandler(temp_dir, "p", recorder)
        handler.on_moved(FileMovedEvent(str(temp_dir / "a.py"), str(temp_dir / "a.py.bak")))
        assert recorder.pairs() == [(EventType.DELETED, "a.py")]

    def test_ignored_paths(self, temp_dir: Path, tmp_path: Path):
        recorder = _Recorder()
        handler = ChangeHandler(temp_dir, "p", recorder)
        handler.on_created(DirCreatedEvent(str(temp_dir / "pkg")))
        handler.on_created(FileCreatedEvent(str(temp_dir / "README.md")))
        handler.on_created(FileCreatedEvent(str(temp_dir / "node_modules" / "x" / "index.js")))
        handler.on_created(FileCreatedEvent(str(temp_dir / ".git" / "hooks.py")))
        handler.on_created(FileCreatedEvent(str(tmp_path / "outside.py")))
        assert recorder.events == []


class TestFileWatcher:
    """Tests for the observer lifecycle."""

    def test_missing_root(self, temp_dir: Path):
        watcher = FileWatcher(temp_dir / "missing", "p", _Recorder())
        with pytest.raises(WatcherDisconnected):
            watcher.start()
        assert not watcher.running

    def test_start_stop(self, temp_dir: Path):
        watcher = FileWatcher(temp_dir, "p", _Recorder())
        assert not watcher.ensure_running()
        watcher.start()
        try:
            assert watcher.running
            assert not watcher.ensure_running()
        finally:
            watcher.stop()
        assert not watcher.running
        # A deliberate stop is not a disconnect.
        assert not watcher.ensure_running()

    def test_dead_observer_is_restarted(self, temp_dir: Path):
        reconnects = []
        watcher = FileWatcher(temp_dir, "p", _Recorder(), on_reconnect=lambda: reconnects.append(1))
        watcher.start()
        try:
            observer = watcher._observer
            observer.stop()
            observer.join(timeout=5)
            assert not watcher.running

            assert watcher.ensure_running()
            assert watcher.running
            assert reconnects == [1]
        finally:
            watcher.stop()

    def test_reports_real_file_changes(self, temp_dir: Path):
        recorder = _Recorder()
        watcher = FileWatcher(temp_dir, "p", recorder)
        watcher.start()
        try:
            (temp_dir / "live.py").write_text("x = 1\n", encoding="utf-8")
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and not any(e.path == "live.py" for e in recorder.events):
                time.sleep(0.05)
        finally:
            watcher.stop()
        assert any(e.path == "live.py" for e in recorder.events)
