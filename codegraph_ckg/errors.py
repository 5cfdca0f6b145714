"""Exception hierarchy shared by the store, indexing and retrieval layers.

Transient failures (:class:`StoreUnavailable`, :class:`EmbedderUnavailable`,
:class:`WatcherDisconnected`) are retried with backoff by the calling
component.  Per-item failures (:class:`ParseError`,
:class:`UnsupportedLanguage`) are isolated to one file.
:class:`IndexCorruption` signals that the per-file atomicity contract was
broken and is never retried.
"""

from __future__ import annotations

from typing import Any, Optional


class CKGError(Exception):
    """Base class for all engine errors."""


class TransientError(CKGError):
    """A failure that may succeed when retried."""


class StoreUnavailable(TransientError):
    """The graph / chunk / vector store could not be reached."""


class EmbedderUnavailable(TransientError):
    """The embedding function failed or timed out."""


class WatcherDisconnected(TransientError):
    """The file-system event source stopped delivering events."""


class ParseError(CKGError):
    """A source file could not be parsed."""

    def __init__(self, message: str, file_path: str = "", line: int = 0) -> None:
        super().__init__(message)
        self.file_path = file_path
        self.line = line


class UnsupportedLanguage(CKGError):
    """No language support is registered or enabled for a file."""

    def __init__(self, language: str, file_path: str = "") -> None:
        super().__init__(f"Unsupported language '{language}' for {file_path or 'file'}")
        self.language = language
        self.file_path = file_path


class IndexCorruption(CKGError):
    """The graph violates referential integrity after a committed apply."""

    def __init__(self, message: str, dangling: int = 0, report: Optional[Any] = None) -> None:
        super().__init__(message)
        self.dangling = dangling
        self.report = report
