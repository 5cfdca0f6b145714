"""Language support: parsing source text and extracting symbol declarations.

Every language implements the :class:`LanguageSupport` capability:

- ``parse(source, file_path)`` returns a :class:`SyntaxTree` or raises
  :class:`~codegraph_ckg.errors.ParseError`;
- ``extract_symbols(tree)`` returns a language-neutral :class:`FileSymbols`
  (declarations, imports, call sites, exports) that the extraction pipeline
  turns into graph nodes, edges and chunks.

Python is handled with the built-in ``ast`` module.  JavaScript, TypeScript
and TSX use Tree-sitter grammars, which are error tolerant: a tree with
syntax errors is still walked, and the error is reported on the tree.
"""

from __future__ import annotations

import ast
import builtins
import importlib
import logging
import posixpath
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .errors import ParseError, UnsupportedLanguage
from .models import NodeKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Language <-> file-extension mapping
# ---------------------------------------------------------------------------
LANGUAGE_MAP: Dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
}

SKIP_DIRS: Set[str] = {
    ".venv", "venv", "__pycache__", "node_modules", ".git",
    "site-packages", ".tox", ".pytest_cache", "build", "dist",
    ".mypy_cache", ".ruff_cache", "htmlcov", ".eggs",
    "egg-info", ".codegraph", ".codegraph-ckg", "lancedb", "coverage",
}

_JS_EXTENSIONS = (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx")
_PY_BUILTINS = frozenset(dir(builtins))


def detect_language(file_path: str) -> Optional[str]:
    return LANGUAGE_MAP.get(posixpath.splitext(file_path)[1].lower())


def iter_source_files(root: Path, languages: Optional[Sequence[str]] = None) -> Iterator[Path]:
    """Yield source files under *root* in a stable order, skipping vendored dirs."""
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel_parts = path.relative_to(root).parts
        if any(part in SKIP_DIRS or part.endswith(".egg-info") for part in rel_parts[:-1]):
            continue
        language = detect_language(path.name)
        if language is None:
            continue
        if languages is not None and language not in languages:
            continue
        yield path


# ===================================================================
# Language-neutral extraction output
# ===================================================================

@dataclass
class CallSite:
    name: str
    line: int
    qualifier: Optional[str] = None


@dataclass
class SymbolDef:
    """One declaration found in a file.

    ``header_end`` is the last line of the declaration header (signature);
    ``doc_span`` covers the docstring or the comment block documenting it.
    """

    name: str
    kind: str
    start_line: int
    end_line: int
    header_end: int
    parent: Optional[str] = None
    doc_span: Optional[Tuple[int, int]] = None
    exported: bool = False
    entry_point: bool = False
    visibility: str = "public"
    bases: List[str] = field(default_factory=list)
    calls: List[CallSite] = field(default_factory=list)
    names: List[CallSite] = field(default_factory=list)


@dataclass
class ImportDef:
    """An import statement.

    ``names`` maps the local binding to the imported name; ``"*"`` marks a
    whole-module binding (``import x``, ``import * as ns``).
    """

    specifier: str
    line: int
    names: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class FileSymbols:
    language: str
    symbols: List[SymbolDef] = field(default_factory=list)
    imports: List[ImportDef] = field(default_factory=list)
    calls: List[CallSite] = field(default_factory=list)
    names: List[CallSite] = field(default_factory=list)
    exports: Set[str] = field(default_factory=set)
    statement_lines: Set[int] = field(default_factory=set)
    doc_span: Optional[Tuple[int, int]] = None


@dataclass
class SyntaxTree:
    language: str
    file_path: str
    source: str
    root: Any
    # First syntax error reported by an error-tolerant parser, if any.
    error: Optional[str] = None
    error_line: int = 0

    @property
    def lines(self) -> List[str]:
        return self.source.splitlines()


# ===================================================================
# Abstract capability
# ===================================================================

class LanguageSupport(ABC):
    """Parse + ExtractSymbols capability for one language."""

    name: str = ""
    comment_prefixes: Tuple[str, ...] = ()

    @abstractmethod
    def parse(self, source: str, file_path: str = "") -> SyntaxTree:
        """Parse *source* into a syntax tree; raise ``ParseError`` on failure."""
        ...

    @abstractmethod
    def extract_symbols(self, tree: SyntaxTree) -> FileSymbols:
        """Collect declarations, imports and call sites from *tree*."""
        ...

    @abstractmethod
    def resolve_import(self, specifier: str, file_path: str) -> List[str]:
        """Project-relative paths *specifier* may refer to, most likely first."""
        ...

    def comment_block(self, lines: List[str], start_line: int) -> Optional[Tuple[int, int]]:
        """Span of the comment lines immediately above *start_line*."""
        first = start_line
        while first > 1:
            text = lines[first - 2].strip()
            if not text or not text.startswith(self.comment_prefixes):
                break
            first -= 1
        if first == start_line:
            return None
        return (first, start_line - 1)


def _normalize(path: str) -> Optional[str]:
    norm = posixpath.normpath(path)
    if norm.startswith("..") or norm.startswith("/"):
        return None
    return norm


# ===================================================================
# Python (ast)
# ===================================================================

class _UsageVisitor(ast.NodeVisitor):
    """Collects call sites and loaded names below a statement list."""

    def __init__(self) -> None:
        self.calls: List[CallSite] = []
        self.names: List[CallSite] = []
        self.bound: Set[str] = set()
        self._call_funcs: Set[int] = set()

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if isinstance(func, ast.Name):
            self.calls.append(CallSite(func.id, node.lineno))
            self._call_funcs.add(id(func))
        elif isinstance(func, ast.Attribute):
            qualifier = func.value.id if isinstance(func.value, ast.Name) else None
            self.calls.append(CallSite(func.attr, node.lineno, qualifier))
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            if id(node) not in self._call_funcs:
                self.names.append(CallSite(node.id, node.lineno))
        else:
            self.bound.add(node.id)

    def visit_arg(self, node: ast.arg) -> None:
        self.bound.add(node.arg)
        self.generic_visit(node)

    def _bind_def(self, node: Any) -> None:
        self.bound.add(node.name)
        self.generic_visit(node)

    visit_FunctionDef = _bind_def
    visit_AsyncFunctionDef = _bind_def
    visit_ClassDef = _bind_def

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.bound.add((alias.asname or alias.name).split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            self.bound.add(alias.asname or alias.name)

    def collect(self, nodes: Sequence[ast.AST]) -> "_UsageVisitor":
        for node in nodes:
            self.visit(node)
        self.calls = [
            c for c in self.calls
            if c.qualifier is not None
            or (c.name not in self.bound and c.name not in _PY_BUILTINS)
        ]
        self.names = [
            n for n in self.names
            if n.name not in self.bound and n.name not in _PY_BUILTINS
        ]
        return self


def _py_usage(nodes: Sequence[ast.AST]) -> Tuple[List[CallSite], List[CallSite]]:
    visitor = _UsageVisitor().collect(nodes)
    return visitor.calls, visitor.names


def _py_base_name(expr: ast.AST) -> Optional[str]:
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        return expr.attr
    if isinstance(expr, ast.Subscript):
        return _py_base_name(expr.value)
    return None


def _has_docstring(body: Sequence[ast.stmt]) -> bool:
    return bool(
        body
        and isinstance(body[0], ast.Expr)
        and isinstance(body[0].value, ast.Constant)
        and isinstance(body[0].value.value, str)
    )


class PythonLanguage(LanguageSupport):
    name = "python"
    comment_prefixes = ("#",)

    def parse(self, source: str, file_path: str = "") -> SyntaxTree:
        try:
            module = ast.parse(source, filename=file_path or "<unknown>")
        except SyntaxError as exc:
            raise ParseError(
                f"{exc.msg} (line {exc.lineno})", file_path, exc.lineno or 0,
            ) from exc
        except ValueError as exc:
            raise ParseError(str(exc), file_path) from exc
        return SyntaxTree(language=self.name, file_path=file_path, source=source, root=module)

    def resolve_import(self, specifier: str, file_path: str) -> List[str]:
        level = len(specifier) - len(specifier.lstrip("."))
        module = specifier[level:].replace(".", "/")
        if level:
            base = posixpath.dirname(file_path)
            for _ in range(level - 1):
                base = posixpath.dirname(base)
            stem = posixpath.join(base, module) if module else base
            roots = [stem]
        else:
            roots = [module, posixpath.join("src", module)]
        candidates: List[str] = []
        for root in roots:
            if not root:
                continue
            for option in (root + ".py", posixpath.join(root, "__init__.py")):
                norm = _normalize(option)
                if norm and norm not in candidates:
                    candidates.append(norm)
        return candidates

    # ------------------------------------------------------------------
    # Symbol extraction
    # ------------------------------------------------------------------

    def extract_symbols(self, tree: SyntaxTree) -> FileSymbols:
        module: ast.Module = tree.root
        lines = tree.lines
        out = FileSymbols(language=self.name)
        dunder_all = self._dunder_all(module)

        if _has_docstring(module.body):
            first = module.body[0]
            out.doc_span = (first.lineno, first.end_lineno or first.lineno)

        for node in ast.walk(module):
            if isinstance(node, ast.stmt):
                out.statement_lines.add(node.lineno)
            if isinstance(node, ast.Import):
                for alias in node.names:
                    local = alias.asname or alias.name.split(".")[0]
                    out.imports.append(ImportDef(alias.name, node.lineno, [(local, "*")]))
            elif isinstance(node, ast.ImportFrom):
                spec = "." * (node.level or 0) + (node.module or "")
                self._import_from(node, spec, out)

        loose: List[ast.stmt] = []
        for stmt in module.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                out.symbols.append(self._function(stmt, lines, None))
            elif isinstance(stmt, ast.ClassDef):
                out.symbols.extend(self._class(stmt, lines))
            elif isinstance(stmt, (ast.Assign, ast.AnnAssign)):
                out.symbols.extend(self._assignment(stmt, lines))
            elif type(stmt).__name__ == "TypeAlias":
                out.symbols.append(self._type_alias(stmt, lines))
            elif not isinstance(stmt, (ast.Import, ast.ImportFrom)):
                if not (isinstance(stmt, ast.Expr) and stmt is module.body[0] and out.doc_span):
                    loose.append(stmt)

        out.calls, out.names = _py_usage(loose)

        for sym in out.symbols:
            if sym.parent is None:
                if dunder_all is not None:
                    sym.exported = sym.name in dunder_all
                else:
                    sym.exported = not sym.name.startswith("_")
        if dunder_all:
            out.exports.update(dunder_all)
        return out

    def _import_from(self, node: ast.ImportFrom, spec: str, out: FileSymbols) -> None:
        if node.module:
            names = [(a.asname or a.name, a.name) for a in node.names if a.name != "*"]
            out.imports.append(ImportDef(spec, node.lineno, names))
            return
        # ``from . import a, b`` imports sibling modules
        for alias in node.names:
            out.imports.append(
                ImportDef(spec + alias.name, node.lineno, [(alias.asname or alias.name, "*")])
            )

    @staticmethod
    def _dunder_all(module: ast.Module) -> Optional[Set[str]]:
        for stmt in module.body:
            if not isinstance(stmt, ast.Assign):
                continue
            if any(isinstance(t, ast.Name) and t.id == "__all__" for t in stmt.targets):
                if isinstance(stmt.value, (ast.List, ast.Tuple)):
                    return {
                        elt.value for elt in stmt.value.elts
                        if isinstance(elt, ast.Constant) and isinstance(elt.value, str)
                    }
        return None

    def _span(self, node: Any) -> Tuple[int, int]:
        decorators = getattr(node, "decorator_list", [])
        start = min([node.lineno] + [d.lineno for d in decorators])
        return start, node.end_lineno or node.lineno

    def _doc_span(self, node: Any, lines: List[str], start: int) -> Optional[Tuple[int, int]]:
        body = getattr(node, "body", [])
        if _has_docstring(body):
            return (body[0].lineno, body[0].end_lineno or body[0].lineno)
        return self.comment_block(lines, start)

    def _function(self, node: Any, lines: List[str], parent: Optional[str]) -> SymbolDef:
        start, end = self._span(node)
        calls, names = _py_usage(node.body + node.decorator_list)
        params = {a.arg for a in ast.walk(node.args) if isinstance(a, ast.arg)}
        names = [n for n in names if n.name not in params]
        calls = [c for c in calls if c.qualifier is not None or c.name not in params]
        return SymbolDef(
            name=node.name,
            kind=NodeKind.FUNCTION,
            start_line=start,
            end_line=end,
            header_end=max(node.lineno, node.body[0].lineno - 1),
            parent=parent,
            doc_span=self._doc_span(node, lines, start),
            entry_point=(
                node.name == "main"
                or node.name.startswith("test_")
                or bool(node.decorator_list)
            ),
            visibility="private" if node.name.startswith("_") else "public",
            calls=calls,
            names=names,
        )

    def _class(self, node: ast.ClassDef, lines: List[str]) -> List[SymbolDef]:
        start, end = self._span(node)
        methods: List[SymbolDef] = []
        rest: List[ast.stmt] = []
        for stmt in node.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                methods.append(self._function(stmt, lines, node.name))
            else:
                rest.append(stmt)
        calls, names = _py_usage(rest + node.decorator_list + node.keywords)
        cls = SymbolDef(
            name=node.name,
            kind=NodeKind.CLASS,
            start_line=start,
            end_line=end,
            header_end=max(node.lineno, node.body[0].lineno - 1),
            doc_span=self._doc_span(node, lines, start),
            entry_point=bool(node.decorator_list),
            visibility="private" if node.name.startswith("_") else "public",
            bases=[b for b in (_py_base_name(e) for e in node.bases) if b],
            calls=calls,
            names=names,
        )
        return [cls] + methods

    def _assignment(self, node: Any, lines: List[str]) -> List[SymbolDef]:
        targets = node.targets if isinstance(node, ast.Assign) else [node.target]
        names = [t.id for t in targets if isinstance(t, ast.Name)]
        names = [n for n in names if n != "__all__"]
        if not names:
            return []
        value = [node.value] if node.value is not None else []
        calls, refs = _py_usage(value)
        start, end = node.lineno, node.end_lineno or node.lineno
        return [
            SymbolDef(
                name=name,
                kind=NodeKind.VARIABLE,
                start_line=start,
                end_line=end,
                header_end=start,
                doc_span=self.comment_block(lines, start),
                visibility="private" if name.startswith("_") else "public",
                calls=calls,
                names=refs,
            )
            for name in names
        ]

    def _type_alias(self, node: Any, lines: List[str]) -> SymbolDef:
        start, end = node.lineno, node.end_lineno or node.lineno
        _, refs = _py_usage([node.value])
        return SymbolDef(
            name=node.name.id,
            kind=NodeKind.TYPE,
            start_line=start,
            end_line=end,
            header_end=start,
            doc_span=self.comment_block(lines, start),
            names=refs,
        )


# ===================================================================
# JavaScript / TypeScript (Tree-sitter)
# ===================================================================

def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace")


def _line(node: Any) -> int:
    return node.start_point[0] + 1


def _end_line(node: Any) -> int:
    return node.end_point[0] + 1


def _walk(node: Any) -> Iterator[Any]:
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def _string_value(node: Any) -> str:
    return _text(node).strip("'\"`")


_FUNCTION_VALUES = {
    "arrow_function", "function_expression", "function", "generator_function",
}
_DECLARATIONS = {"lexical_declaration", "variable_declaration"}
_TYPE_DECLARATIONS = {"interface_declaration", "type_alias_declaration", "enum_declaration"}
_CLASS_DECLARATIONS = {"class_declaration", "abstract_class_declaration"}
_FUNCTION_DECLARATIONS = {"function_declaration", "generator_function_declaration"}


class TreeSitterLanguage(LanguageSupport):
    """JavaScript-family language backed by a Tree-sitter grammar package."""

    comment_prefixes = ("//", "/*", "*")

    def __init__(self, name: str, module: str, entry: str = "language") -> None:
        self.name = name
        self._module = module
        self._entry = entry
        self._language: Any = None
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Grammar loading
    # ------------------------------------------------------------------

    def _parser(self) -> Any:
        parser = getattr(self._local, "parser", None)
        if parser is not None:
            return parser
        from tree_sitter import Language, Parser as TSParser

        if self._language is None:
            try:
                mod = importlib.import_module(self._module)
            except ImportError as exc:
                logger.warning(
                    "Grammar package '%s' not installed for language '%s'. "
                    "Install with: pip install %s",
                    self._module, self.name, self._module.replace("_", "-"),
                )
                raise UnsupportedLanguage(self.name) from exc
            # tree-sitter >=0.22 per-language packages expose a function
            # returning the Language capsule.
            self._language = Language(getattr(mod, self._entry)())
        parser = TSParser(self._language)
        self._local.parser = parser
        return parser

    def parse(self, source: str, file_path: str = "") -> SyntaxTree:
        try:
            tree = self._parser().parse(source.encode("utf-8"))
        except (ValueError, RuntimeError) as exc:
            raise ParseError(str(exc), file_path) from exc
        result = SyntaxTree(language=self.name, file_path=file_path, source=source, root=tree)
        if tree.root_node.has_error:
            for node in _walk(tree.root_node):
                if node.type == "ERROR" or node.is_missing:
                    result.error_line = _line(node)
                    break
            result.error = f"syntax error near line {result.error_line or 1}"
        return result

    def resolve_import(self, specifier: str, file_path: str) -> List[str]:
        if not specifier.startswith((".", "/")):
            return []
        if specifier.startswith("/"):
            joined = specifier.lstrip("/")
        else:
            joined = posixpath.join(posixpath.dirname(file_path), specifier)
        base = _normalize(joined)
        if base is None:
            return []
        stem, ext = posixpath.splitext(base)
        options: List[str] = []
        if ext in _JS_EXTENSIONS:
            options.append(base)
            if ext == ".js":
                options.extend([stem + ".ts", stem + ".tsx"])
        options.extend(base + e for e in _JS_EXTENSIONS)
        options.extend(posixpath.join(base, "index" + e) for e in _JS_EXTENSIONS)
        seen: List[str] = []
        for option in options:
            if option not in seen:
                seen.append(option)
        return seen

    # ------------------------------------------------------------------
    # Symbol extraction
    # ------------------------------------------------------------------

    def extract_symbols(self, tree: SyntaxTree) -> FileSymbols:
        root = tree.root.root_node
        lines = tree.lines
        out = FileSymbols(language=self.name)

        for node in _walk(root):
            if node.type.endswith(("_statement", "_declaration")) or node.type == "method_definition":
                out.statement_lines.add(_line(node))
            elif node.type == "call_expression":
                self._require(node, out)

        loose: List[Any] = []
        for child in root.named_children:
            if not self._top_level(child, child, False, lines, out):
                loose.append(child)

        for node in loose:
            calls, names = self._usage(node)
            out.calls.extend(calls)
            out.names.extend(names)

        for sym in out.symbols:
            if sym.parent is None and sym.name in out.exports:
                sym.exported = True
        return out

    def _top_level(self, node: Any, outer: Any, exported: bool, lines: List[str], out: FileSymbols) -> bool:
        """Record a top-level statement; returns False for loose module code."""
        kind = node.type
        if kind == "export_statement":
            return self._export(node, lines, out)
        if kind == "import_statement":
            self._import(node, out)
            return True
        if kind in _FUNCTION_DECLARATIONS:
            out.symbols.append(self._function(node, outer, node.child_by_field_name("body"), None, exported, lines))
            return True
        if kind in _CLASS_DECLARATIONS:
            out.symbols.extend(self._class(node, outer, exported, lines))
            return True
        if kind in _TYPE_DECLARATIONS:
            out.symbols.append(self._type(node, outer, exported, lines))
            return True
        if kind in _DECLARATIONS:
            out.symbols.extend(self._declaration(node, outer, exported, lines))
            return True
        if kind == "expression_statement":
            return self._module_exports(node, out)
        return False

    def _export(self, node: Any, lines: List[str], out: FileSymbols) -> bool:
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            before = len(out.symbols)
            self._top_level(declaration, node, True, lines, out)
            for sym in out.symbols[before:]:
                if sym.parent is None:
                    out.exports.add(sym.name)
            return True

        source = node.child_by_field_name("source")
        value = node.child_by_field_name("value")
        names: List[Tuple[str, str]] = []
        for child in node.named_children:
            if child.type != "export_clause":
                continue
            for spec in child.named_children:
                name = spec.child_by_field_name("name")
                alias = spec.child_by_field_name("alias")
                if name is None:
                    continue
                out.exports.add(_text(alias if alias is not None else name))
                if source is None:
                    out.exports.add(_text(name))
                names.append((_text(alias if alias is not None else name), _text(name)))
        if source is not None:
            out.imports.append(ImportDef(_string_value(source), _line(node), names))
            return True
        if value is not None:
            if value.type == "identifier":
                out.exports.add(_text(value))
                return True
            name = value.child_by_field_name("name")
            if value.type in ("function_expression", "function", "class") and name is not None:
                if value.type == "class":
                    out.symbols.extend(self._class(value, node, True, lines))
                else:
                    body = value.child_by_field_name("body")
                    out.symbols.append(self._function(value, node, body, None, True, lines))
                out.exports.add(_text(name))
                return True
            return False
        return True

    def _import(self, node: Any, out: FileSymbols) -> None:
        source = node.child_by_field_name("source")
        if source is None:
            return
        names: List[Tuple[str, str]] = []
        for clause in node.named_children:
            if clause.type != "import_clause":
                continue
            for part in clause.named_children:
                if part.type == "identifier":
                    names.append((_text(part), _text(part)))
                elif part.type == "namespace_import":
                    for ident in part.named_children:
                        names.append((_text(ident), "*"))
                elif part.type == "named_imports":
                    for spec in part.named_children:
                        name = spec.child_by_field_name("name")
                        alias = spec.child_by_field_name("alias")
                        if name is not None:
                            local = alias if alias is not None else name
                            names.append((_text(local), _text(name)))
        out.imports.append(ImportDef(_string_value(source), _line(node), names))

    def _require(self, call: Any, out: FileSymbols) -> None:
        func = call.child_by_field_name("function")
        args = call.child_by_field_name("arguments")
        if func is None or args is None or _text(func) != "require":
            return
        strings = [a for a in args.named_children if a.type == "string"]
        if not strings:
            return
        names: List[Tuple[str, str]] = []
        parent = call.parent
        if parent is not None and parent.type == "variable_declarator":
            target = parent.child_by_field_name("name")
            if target is not None and target.type == "identifier":
                names.append((_text(target), "*"))
            elif target is not None and target.type == "object_pattern":
                for prop in target.named_children:
                    if prop.type == "shorthand_property_identifier_pattern":
                        names.append((_text(prop), _text(prop)))
                    elif prop.type == "pair_pattern":
                        key = prop.child_by_field_name("key")
                        value = prop.child_by_field_name("value")
                        if key is not None and value is not None:
                            names.append((_text(value), _text(key)))
        out.imports.append(ImportDef(_string_value(strings[0]), _line(call), names))

    def _module_exports(self, node: Any, out: FileSymbols) -> bool:
        expr = node.named_children[0] if node.named_children else None
        if expr is None or expr.type != "assignment_expression":
            return False
        left = expr.child_by_field_name("left")
        right = expr.child_by_field_name("right")
        if left is None or right is None:
            return False
        target = _text(left)
        if target == "module.exports":
            if right.type == "identifier":
                out.exports.add(_text(right))
            elif right.type == "object":
                for prop in right.named_children:
                    if prop.type == "shorthand_property_identifier":
                        out.exports.add(_text(prop))
                    elif prop.type == "pair":
                        key = prop.child_by_field_name("key")
                        value = prop.child_by_field_name("value")
                        if key is not None:
                            out.exports.add(_string_value(key))
                        if value is not None and value.type == "identifier":
                            out.exports.add(_text(value))
        elif target.startswith(("module.exports.", "exports.")):
            out.exports.add(target.rsplit(".", 1)[-1])
            if right.type == "identifier":
                out.exports.add(_text(right))
        else:
            return False
        calls, names = self._usage(right)
        out.calls.extend(calls)
        out.names.extend(names)
        return True

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _doc_span(self, outer: Any, lines: List[str]) -> Optional[Tuple[int, int]]:
        return self.comment_block(lines, _line(outer))

    @staticmethod
    def _header_end(outer: Any, body: Any) -> int:
        start = _line(outer)
        if body is None:
            return start
        if body.type in ("statement_block", "class_body", "object_type", "interface_body", "enum_body"):
            return max(start, _line(body))
        return max(start, _line(body) - 1)

    def _function(
        self, node: Any, outer: Any, body: Any, parent: Optional[str], exported: bool,
        lines: List[str], name: Optional[str] = None,
    ) -> SymbolDef:
        if name is None:
            name_node = node.child_by_field_name("name")
            name = _text(name_node) if name_node is not None else "default"
        calls, names = self._usage(body) if body is not None else ([], [])
        private = name.startswith(("_", "#")) or any(
            c.type == "accessibility_modifier" and _text(c) == "private" for c in node.children
        )
        return SymbolDef(
            name=name,
            kind=NodeKind.FUNCTION,
            start_line=_line(outer),
            end_line=_end_line(outer),
            header_end=self._header_end(outer, body),
            parent=parent,
            doc_span=self._doc_span(outer, lines),
            exported=exported,
            entry_point=name == "main",
            visibility="private" if private else "public",
            calls=calls,
            names=names,
        )

    def _class(self, node: Any, outer: Any, exported: bool, lines: List[str]) -> List[SymbolDef]:
        name_node = node.child_by_field_name("name")
        name = _text(name_node) if name_node is not None else "default"
        body = node.child_by_field_name("body")
        bases: List[str] = []
        for child in node.children:
            if child.type != "class_heritage":
                continue
            for sub in _walk(child):
                if sub.type in ("identifier", "type_identifier"):
                    bases.append(_text(sub))
                elif sub.type == "member_expression":
                    prop = sub.child_by_field_name("property")
                    if prop is not None:
                        bases.append(_text(prop))
        methods: List[SymbolDef] = []
        rest: List[Any] = []
        if body is not None:
            for member in body.named_children:
                if member.type == "method_definition":
                    method_name = member.child_by_field_name("name")
                    methods.append(self._function(
                        member, member, member.child_by_field_name("body"), name, False, lines,
                        name=_text(method_name) if method_name is not None else "anonymous",
                    ))
                else:
                    rest.append(member)
        calls: List[CallSite] = []
        names: List[CallSite] = []
        for member in rest:
            c, n = self._usage(member)
            calls.extend(c)
            names.extend(n)
        cls = SymbolDef(
            name=name,
            kind=NodeKind.CLASS,
            start_line=_line(outer),
            end_line=_end_line(outer),
            header_end=self._header_end(outer, body),
            doc_span=self._doc_span(outer, lines),
            exported=exported,
            visibility="private" if name.startswith("_") else "public",
            bases=[b for b in dict.fromkeys(bases) if b != name],
            calls=calls,
            names=names,
        )
        return [cls] + methods

    def _type(self, node: Any, outer: Any, exported: bool, lines: List[str]) -> SymbolDef:
        name_node = node.child_by_field_name("name")
        body = node.child_by_field_name("body") or node.child_by_field_name("value")
        _, names = self._usage(body) if body is not None else ([], [])
        return SymbolDef(
            name=_text(name_node) if name_node is not None else "anonymous",
            kind=NodeKind.TYPE,
            start_line=_line(outer),
            end_line=_end_line(outer),
            header_end=self._header_end(outer, body),
            doc_span=self._doc_span(outer, lines),
            exported=exported,
            names=names,
        )

    def _declaration(self, node: Any, outer: Any, exported: bool, lines: List[str]) -> List[SymbolDef]:
        symbols: List[SymbolDef] = []
        for declarator in node.named_children:
            if declarator.type != "variable_declarator":
                continue
            name_node = declarator.child_by_field_name("name")
            if name_node is None or name_node.type != "identifier":
                continue
            name = _text(name_node)
            value = declarator.child_by_field_name("value")
            if value is not None and value.type in _FUNCTION_VALUES:
                symbols.append(self._function(
                    value, outer, value.child_by_field_name("body"), None, exported, lines, name=name,
                ))
                continue
            if value is not None and value.type == "class":
                for sym in self._class(value, outer, exported, lines):
                    if sym.parent is None:
                        sym.name = name
                    else:
                        sym.parent = name
                    symbols.append(sym)
                continue
            calls, names = self._usage(value) if value is not None else ([], [])
            symbols.append(SymbolDef(
                name=name,
                kind=NodeKind.VARIABLE,
                start_line=_line(outer),
                end_line=_end_line(outer),
                header_end=_line(outer),
                doc_span=self._doc_span(outer, lines),
                exported=exported,
                visibility="private" if name.startswith("_") else "public",
                calls=[c for c in calls if c.name != "require"],
                names=names,
            ))
        return symbols

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    @staticmethod
    def _usage(root: Any) -> Tuple[List[CallSite], List[CallSite]]:
        """Call sites and free identifiers below *root*."""
        calls: List[CallSite] = []
        names: List[CallSite] = []
        bound: Set[str] = set()
        callee_ids: Set[Tuple[int, int]] = set()
        for node in _walk(root):
            kind = node.type
            if kind in ("call_expression", "new_expression"):
                func = node.child_by_field_name("function") or node.child_by_field_name("constructor")
                if func is None:
                    continue
                if func.type == "identifier":
                    if _text(func) != "require":
                        calls.append(CallSite(_text(func), _line(node)))
                    callee_ids.add((func.start_byte, func.end_byte))
                elif func.type == "member_expression":
                    prop = func.child_by_field_name("property")
                    obj = func.child_by_field_name("object")
                    if prop is not None:
                        qualifier = _text(obj) if obj is not None and obj.type == "identifier" else None
                        calls.append(CallSite(_text(prop), _line(node), qualifier))
            elif kind == "variable_declarator":
                target = node.child_by_field_name("name")
                if target is not None:
                    bound.update(_text(i) for i in _walk(target) if i.type in ("identifier", "shorthand_property_identifier_pattern"))
            elif kind in ("formal_parameters", "catch_clause"):
                for ident in _walk(node):
                    if ident.type in ("identifier", "shorthand_property_identifier_pattern"):
                        bound.add(_text(ident))
            elif kind == "arrow_function":
                param = node.child_by_field_name("parameter")
                if param is not None:
                    bound.add(_text(param))
            elif kind in ("function_declaration", "class_declaration"):
                name = node.child_by_field_name("name")
                if name is not None:
                    bound.add(_text(name))
            elif kind in ("identifier", "type_identifier"):
                if (node.start_byte, node.end_byte) not in callee_ids:
                    names.append(CallSite(_text(node), _line(node)))
        names = [n for n in names if n.name not in bound]
        calls = [c for c in calls if c.qualifier is not None or c.name not in bound]
        return calls, names


# ===================================================================
# Registry
# ===================================================================

def _default_supports() -> List[LanguageSupport]:
    return [
        PythonLanguage(),
        TreeSitterLanguage("javascript", "tree_sitter_javascript"),
        TreeSitterLanguage("typescript", "tree_sitter_typescript", "language_typescript"),
        TreeSitterLanguage("tsx", "tree_sitter_typescript", "language_tsx"),
    ]


class LanguageRegistry:
    """Language supports keyed by language name, selected by file extension."""

    def __init__(self, enabled: Optional[Sequence[str]] = None) -> None:
        self._supports: Dict[str, LanguageSupport] = {}
        self.enabled: Optional[Set[str]] = set(enabled) if enabled is not None else None
        for support in _default_supports():
            self.register(support)

    def register(self, support: LanguageSupport) -> None:
        self._supports[support.name] = support

    @property
    def languages(self) -> List[str]:
        names = sorted(self._supports)
        if self.enabled is None:
            return names
        return [n for n in names if n in self.enabled]

    def for_language(self, language: str, file_path: str = "") -> LanguageSupport:
        if self.enabled is not None and language not in self.enabled:
            raise UnsupportedLanguage(language, file_path)
        support = self._supports.get(language)
        if support is None:
            raise UnsupportedLanguage(language, file_path)
        return support

    def for_path(self, file_path: str) -> LanguageSupport:
        language = detect_language(file_path)
        if language is None:
            raise UnsupportedLanguage(posixpath.splitext(file_path)[1] or "unknown", file_path)
        return self.for_language(language, file_path)

    def supports(self, file_path: str) -> bool:
        language = detect_language(file_path)
        return language is not None and language in self.languages
