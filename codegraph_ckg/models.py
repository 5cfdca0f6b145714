"""Core data models shared by the store, extraction, indexing and retrieval layers."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


class NodeKind:
    FILE = "File"
    FUNCTION = "Function"
    CLASS = "Class"
    VARIABLE = "Variable"
    TYPE = "Type"
    ENDPOINT = "Endpoint"

    SYMBOLS = ("Function", "Class", "Variable", "Type")
    ALL = ("File", "Function", "Class", "Variable", "Type", "Endpoint")


class Relationship:
    DEFINES = "defines"
    REFERENCES = "references"
    IMPORTS = "imports"
    CALLS = "calls"
    EXTENDS = "extends"

    USAGE = ("references", "calls")
    ALL = ("defines", "references", "imports", "calls", "extends")


class ChunkType:
    SIGNATURE = "signature"
    IMPLEMENTATION = "implementation"
    DOCUMENTATION = "documentation"


class EventType:
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangeState:
    QUEUED = "queued"
    EXTRACTING = "extracting"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


def make_node_id(project_id: str, file_path: str, kind: str, name: str, start_line: int) -> str:
    """Deterministic node id from ``(project, file, kind, name, start_line)``."""
    key = f"{project_id}\x00{file_path}\x00{kind}\x00{name}\x00{start_line}"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
    return f"{kind.lower()}:{digest}"


def make_chunk_id(node_id: str, chunk_type: str, ordinal: int) -> str:
    digest = hashlib.sha1(f"{node_id}\x00{chunk_type}\x00{ordinal}".encode("utf-8")).hexdigest()[:16]
    return f"chunk:{digest}"


def make_ref_id(from_id: str, relationship: str, target: str, line: int) -> str:
    digest = hashlib.sha1(
        f"{from_id}\x00{relationship}\x00{target}\x00{line}".encode("utf-8")
    ).hexdigest()[:16]
    return f"ref:{digest}"


def content_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def dump_metadata(metadata: Dict[str, Any]) -> str:
    """Canonical JSON so identical metadata always serialises identically."""
    return json.dumps(metadata or {}, sort_keys=True, separators=(",", ":"))


@dataclass
class Node:
    node_id: str
    kind: str
    name: str
    file_path: str
    language: str
    start_line: int
    end_line: int
    project_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def qualname(self) -> str:
        parent = self.metadata.get("parent")
        return f"{parent}.{self.name}" if parent else self.name

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Edge:
    from_id: str
    to_id: str
    relationship: str
    project_id: str
    file_path: str
    weight: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    ref_id: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.from_id, self.to_id, self.relationship)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Reference:
    """A cross-file pointer emitted by extraction and resolved by the linker.

    ``target`` is a symbol name for ``calls`` / ``references`` / ``extends``
    and the raw module specifier for ``imports``.  ``candidates`` lists the
    project-relative paths an import may resolve to; ``hint_paths`` lists
    files a name was imported from.
    """

    ref_id: str
    from_id: str
    relationship: str
    target: str
    project_id: str
    file_path: str
    line: int
    weight: float = 1.0
    candidates: List[str] = field(default_factory=list)
    hint_paths: List[str] = field(default_factory=list)


@dataclass
class Chunk:
    chunk_id: str
    node_id: str
    chunk_type: str
    content: str
    token_count: int
    project_id: str
    file_path: str
    start_line: int
    end_line: int
    ordinal: int = 0
    content_hash: str = ""

    def __post_init__(self) -> None:
        if not self.content_hash:
            self.content_hash = content_hash(self.content)


@dataclass
class Embedding:
    chunk_id: str
    vector: List[float]
    model: str
    content_hash: str = ""


@dataclass
class ScoredChunk:
    chunk: Chunk
    score: float
    source: str = "semantic"


@dataclass
class Diagnostic:
    file_path: str
    message: str
    severity: str = "warning"
    line: int = 0


@dataclass
class ExtractionResult:
    file_path: str
    language: str
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    refs: List[Reference] = field(default_factory=list)
    chunks: List[Chunk] = field(default_factory=list)
    error: Optional[str] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ImpactReport:
    symbol: str
    reference_count: int
    file_spread: int
    recommendation: str
    definitions: List[Node] = field(default_factory=list)
    files: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "reference_count": self.reference_count,
            "file_spread": self.file_spread,
            "recommendation": self.recommendation,
            "definitions": [n.to_dict() for n in self.definitions],
            "files": dict(self.files),
        }


@dataclass
class FileChangeEvent:
    path: str
    project_id: str
    event_type: str


@dataclass
class ContextItem:
    chunk_id: str
    node_id: str
    name: str
    kind: str
    file_path: str
    chunk_type: str
    start_line: int
    end_line: int
    score: float
    token_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContextPayload:
    query: str
    project_id: str
    max_tokens: int
    content: str = ""
    token_count: int = 0
    items: List[ContextItem] = field(default_factory=list)
    degraded: bool = False
    partial: bool = False
    reasons: List[str] = field(default_factory=list)
    candidate_count: int = 0

    @property
    def empty(self) -> bool:
        return not self.items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "project_id": self.project_id,
            "max_tokens": self.max_tokens,
            "content": self.content,
            "token_count": self.token_count,
            "items": [item.to_dict() for item in self.items],
            "degraded": self.degraded,
            "partial": self.partial,
            "reasons": list(self.reasons),
            "candidate_count": self.candidate_count,
        }
