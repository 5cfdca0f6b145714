"""Extraction pipeline: syntax tree -> nodes, edges, references and chunks.

Extraction is pure.  The same tree always yields the same ids, the same
ordering and the same chunk text.  Names that resolve inside the file become
edges directly; everything else (imports, calls into other modules) becomes
a :class:`~codegraph_ckg.models.Reference` for the linker.
"""

from __future__ import annotations

import logging
import posixpath
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from .chunker import Chunker
from .errors import ParseError, UnsupportedLanguage
from .models import (
    Diagnostic,
    Edge,
    ExtractionResult,
    Node,
    NodeKind,
    Reference,
    Relationship,
    make_node_id,
    make_ref_id,
)
from .parser import CallSite, FileSymbols, LanguageRegistry, LanguageSupport, SymbolDef, SyntaxTree

logger = logging.getLogger(__name__)

_SELF_NAMES = ("self", "this", "cls")

# (local name) -> (imported name, candidate paths)
ImportMap = Dict[str, Tuple[str, List[str]]]


def _signature(lines: List[str], sym: SymbolDef) -> str:
    if sym.start_line > len(lines):
        return sym.name
    header = " ".join(
        line.strip() for line in lines[sym.start_line - 1:sym.header_end] if line.strip()
    )
    return header[:200]


class _Usage:
    """Aggregates usage per ``(source, relationship, target)`` into weights."""

    def __init__(self) -> None:
        self.local: "OrderedDict[Tuple[str, str, str], int]" = OrderedDict()
        self.remote: "OrderedDict[Tuple[str, str, str, Tuple[str, ...]], List[int]]" = OrderedDict()

    def edge(self, from_id: str, to_id: str, relationship: str) -> None:
        key = (from_id, to_id, relationship)
        self.local[key] = self.local.get(key, 0) + 1

    def ref(self, from_id: str, relationship: str, target: str, line: int, hints: List[str]) -> None:
        key = (from_id, relationship, target, tuple(hints))
        entry = self.remote.setdefault(key, [line, 0])
        entry[0] = min(entry[0], line)
        entry[1] += 1


class ExtractionPipeline:
    """Turns parsed files into graph rows and chunks."""

    def __init__(self, registry: Optional[LanguageRegistry] = None, max_chunk_tokens: int = 512) -> None:
        self.registry = registry or LanguageRegistry()
        self.chunker = Chunker(max_chunk_tokens)

    def extract_source(self, file_path: str, source: str, project_id: str) -> ExtractionResult:
        """Parse and extract one file; per-file failures are returned, not raised."""
        try:
            support = self.registry.for_path(file_path)
        except UnsupportedLanguage as exc:
            return ExtractionResult(
                file_path=file_path,
                language=exc.language,
                diagnostics=[Diagnostic(file_path, str(exc), severity="info")],
            )
        try:
            tree = support.parse(source, file_path)
        except ParseError as exc:
            logger.warning("Parse error in %s: %s", file_path, exc)
            return ExtractionResult(
                file_path=file_path,
                language=support.name,
                error=str(exc),
                diagnostics=[Diagnostic(file_path, str(exc), severity="error", line=exc.line)],
            )
        return self.extract(file_path, tree, project_id)

    def extract(self, file_path: str, tree: SyntaxTree, project_id: str) -> ExtractionResult:
        support = self.registry.for_language(tree.language, file_path)
        symbols = support.extract_symbols(tree)
        lines = tree.lines
        result = ExtractionResult(file_path=file_path, language=tree.language)

        file_node = self._file_node(project_id, file_path, tree.language, lines, symbols)
        result.nodes.append(file_node)

        symbol_ids, top_level, methods = self._symbol_nodes(
            project_id, file_path, tree.language, lines, symbols, file_node, result,
        )
        usage = _Usage()
        imports = self._imports(project_id, file_path, support, symbols, file_node, result)

        for sym, node_id in zip(symbols.symbols, symbol_ids):
            class_methods = methods.get(sym.parent or "", {})
            self._symbol_usage(sym, node_id, top_level, class_methods, imports, usage)
        self._calls(file_node.node_id, symbols.calls, top_level, {}, imports, usage)
        self._names(file_node.node_id, symbols.names, top_level, imports, usage)

        for (from_id, to_id, rel), weight in usage.local.items():
            result.edges.append(Edge(
                from_id=from_id, to_id=to_id, relationship=rel, project_id=project_id,
                file_path=file_path, weight=float(weight),
            ))
        for (from_id, rel, target, hints), (line, count) in usage.remote.items():
            result.refs.append(Reference(
                ref_id=make_ref_id(from_id, rel, target, line),
                from_id=from_id,
                relationship=rel,
                target=target,
                project_id=project_id,
                file_path=file_path,
                line=line,
                weight=float(count),
                hint_paths=list(hints),
            ))

        result.chunks = self.chunker.chunk_file(
            project_id, file_path, lines, symbols, symbol_ids, file_node.node_id,
        )
        result.edges.sort(key=lambda e: (e.from_id, e.to_id, e.relationship))
        result.refs.sort(key=lambda r: r.ref_id)

        if tree.error:
            result.error = tree.error
            result.diagnostics.append(
                Diagnostic(file_path, tree.error, severity="error", line=tree.error_line)
            )
        return result

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    @staticmethod
    def _file_node(
        project_id: str, file_path: str, language: str, lines: List[str], symbols: FileSymbols,
    ) -> Node:
        counts: Dict[str, int] = {}
        for sym in symbols.symbols:
            counts[sym.kind] = counts.get(sym.kind, 0) + 1
        return Node(
            node_id=make_node_id(project_id, file_path, NodeKind.FILE, file_path, 1),
            kind=NodeKind.FILE,
            name=posixpath.basename(file_path),
            file_path=file_path,
            language=language,
            start_line=1,
            end_line=max(len(lines), 1),
            project_id=project_id,
            metadata={
                "path": file_path,
                "has_docstring": symbols.doc_span is not None,
                "symbol_counts": counts,
            },
        )

    def _symbol_nodes(
        self,
        project_id: str,
        file_path: str,
        language: str,
        lines: List[str],
        symbols: FileSymbols,
        file_node: Node,
        result: ExtractionResult,
    ):
        symbol_ids: List[str] = []
        top_level: Dict[str, str] = {}
        methods: Dict[str, Dict[str, str]] = {}
        classes: List[Tuple[SymbolDef, str]] = []
        seen = {file_node.node_id}

        for sym in symbols.symbols:
            node_id = make_node_id(project_id, file_path, sym.kind, sym.name, sym.start_line)
            symbol_ids.append(node_id)
            if node_id in seen:
                result.diagnostics.append(Diagnostic(
                    file_path, f"duplicate declaration of {sym.name}", line=sym.start_line,
                ))
                continue
            seen.add(node_id)
            metadata = {
                "signature": _signature(lines, sym),
                "visibility": sym.visibility,
                "has_docstring": sym.doc_span is not None,
                "exported": sym.exported,
                "entry_point": sym.entry_point,
            }
            if sym.parent:
                metadata["parent"] = sym.parent
            result.nodes.append(Node(
                node_id=node_id,
                kind=sym.kind,
                name=sym.name,
                file_path=file_path,
                language=language,
                start_line=sym.start_line,
                end_line=sym.end_line,
                project_id=project_id,
                metadata=metadata,
            ))

            owner = file_node.node_id
            if sym.parent is None:
                top_level.setdefault(sym.name, node_id)
                if sym.kind == NodeKind.CLASS:
                    classes.append((sym, node_id))
            else:
                for cls, cls_id in reversed(classes):
                    if cls.name == sym.parent and cls.start_line <= sym.start_line <= cls.end_line:
                        owner = cls_id
                        methods.setdefault(sym.parent, {}).setdefault(sym.name, node_id)
                        break
            result.edges.append(Edge(
                from_id=owner, to_id=node_id, relationship=Relationship.DEFINES,
                project_id=project_id, file_path=file_path,
            ))
        return symbol_ids, top_level, methods

    def _imports(
        self,
        project_id: str,
        file_path: str,
        support: LanguageSupport,
        symbols: FileSymbols,
        file_node: Node,
        result: ExtractionResult,
    ) -> ImportMap:
        imports: ImportMap = {}
        emitted = set()
        for imp in symbols.imports:
            candidates = support.resolve_import(imp.specifier, file_path)
            for local, imported in imp.names:
                imports.setdefault(local, (imported, candidates))
            key = (imp.specifier, imp.line)
            if key in emitted:
                continue
            emitted.add(key)
            if candidates:
                result.refs.append(Reference(
                    ref_id=make_ref_id(file_node.node_id, Relationship.IMPORTS, imp.specifier, imp.line),
                    from_id=file_node.node_id,
                    relationship=Relationship.IMPORTS,
                    target=imp.specifier,
                    project_id=project_id,
                    file_path=file_path,
                    line=imp.line,
                    candidates=candidates,
                ))
                continue
            # Bare package specifiers can never resolve inside the project.
            endpoint = Node(
                node_id=make_node_id(project_id, file_path, NodeKind.ENDPOINT, imp.specifier, imp.line),
                kind=NodeKind.ENDPOINT,
                name=imp.specifier,
                file_path=file_path,
                language=file_node.language,
                start_line=imp.line,
                end_line=imp.line,
                project_id=project_id,
                metadata={"unresolved": True, "specifier": imp.specifier},
            )
            result.nodes.append(endpoint)
            result.edges.append(Edge(
                from_id=file_node.node_id,
                to_id=endpoint.node_id,
                relationship=Relationship.IMPORTS,
                project_id=project_id,
                file_path=file_path,
                metadata={"unresolved": True, "specifier": imp.specifier},
            ))
        return imports

    # ------------------------------------------------------------------
    # Usage -> edges / references
    # ------------------------------------------------------------------

    def _symbol_usage(
        self,
        sym: SymbolDef,
        node_id: str,
        top_level: Dict[str, str],
        class_methods: Dict[str, str],
        imports: ImportMap,
        usage: _Usage,
    ) -> None:
        self._calls(node_id, sym.calls, top_level, class_methods, imports, usage)
        self._names(node_id, sym.names, top_level, imports, usage, exclude=sym.name)
        for base in sym.bases:
            if base in imports:
                imported, candidates = imports[base]
                target = base if imported in ("*", "default") else imported
                usage.ref(node_id, Relationship.EXTENDS, target, sym.start_line, candidates)
            elif base in top_level:
                usage.edge(node_id, top_level[base], Relationship.EXTENDS)
            else:
                usage.ref(node_id, Relationship.EXTENDS, base, sym.start_line, [])

    @staticmethod
    def _calls(
        from_id: str,
        calls: List[CallSite],
        top_level: Dict[str, str],
        class_methods: Dict[str, str],
        imports: ImportMap,
        usage: _Usage,
    ) -> None:
        for call in calls:
            qualifier = call.qualifier
            if qualifier in _SELF_NAMES:
                if call.name in class_methods:
                    usage.edge(from_id, class_methods[call.name], Relationship.CALLS)
                else:
                    usage.ref(from_id, Relationship.CALLS, call.name, call.line, [])
            elif qualifier is not None:
                hints = imports[qualifier][1] if qualifier in imports else []
                usage.ref(from_id, Relationship.CALLS, call.name, call.line, hints)
            elif call.name in imports:
                imported, candidates = imports[call.name]
                target = call.name if imported in ("*", "default") else imported
                usage.ref(from_id, Relationship.CALLS, target, call.line, candidates)
            elif call.name in top_level:
                usage.edge(from_id, top_level[call.name], Relationship.CALLS)
            else:
                usage.ref(from_id, Relationship.CALLS, call.name, call.line, [])

    @staticmethod
    def _names(
        from_id: str,
        names: List[CallSite],
        top_level: Dict[str, str],
        imports: ImportMap,
        usage: _Usage,
        exclude: Optional[str] = None,
    ) -> None:
        for name in names:
            if name.name == exclude:
                continue
            if name.name in imports:
                imported, candidates = imports[name.name]
                if imported == "*":
                    continue
                target = name.name if imported == "default" else imported
                usage.ref(from_id, Relationship.REFERENCES, target, name.line, candidates)
            elif name.name in top_level:
                usage.edge(from_id, top_level[name.name], Relationship.REFERENCES)
