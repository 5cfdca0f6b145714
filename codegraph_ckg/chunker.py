"""Symbol-boundary chunking.

Every symbol is cut into a ``signature`` chunk (its declaration header), an
optional ``documentation`` chunk (docstring or the comment block right above
it) and ``implementation`` chunks for the rest of its body.  Methods are
chunked on their own and carved out of their class body.  Module-level code
outside any symbol becomes implementation chunks of the File node.

No chunk exceeds ``max_tokens``; long spans are cut at line boundaries,
preferring blank lines and statement starts.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import Chunk, ChunkType, NodeKind, make_chunk_id
from .parser import FileSymbols, SymbolDef
from .tokens import count_tokens, split_lines


def _segments(line_numbers: Iterable[int]) -> List[Tuple[int, int]]:
    """Group sorted line numbers into contiguous ``(start, end)`` runs."""
    runs: List[Tuple[int, int]] = []
    for n in sorted(line_numbers):
        if runs and runs[-1][1] == n - 1:
            runs[-1] = (runs[-1][0], n)
        else:
            runs.append((n, n))
    return runs


def _span_lines(span: Optional[Tuple[int, int]]) -> Set[int]:
    if span is None:
        return set()
    return set(range(span[0], span[1] + 1))


class Chunker:
    def __init__(self, max_tokens: int = 512) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens

    def chunk_file(
        self,
        project_id: str,
        file_path: str,
        lines: List[str],
        symbols: FileSymbols,
        symbol_ids: Sequence[str],
        file_node_id: str,
    ) -> List[Chunk]:
        """Chunks for a whole file.

        Args:
            symbol_ids: Node id for each entry of ``symbols.symbols``, in order.
            file_node_id: Node id owning module-level chunks.
        """
        boundaries = set(symbols.statement_lines)
        boundaries.update(i + 1 for i, text in enumerate(lines) if not text.strip())
        ordered = tuple(sorted(boundaries))

        chunks: List[Chunk] = []
        covered: Set[int] = set()
        children: Dict[str, List[SymbolDef]] = {}
        for sym in symbols.symbols:
            if sym.parent is not None:
                children.setdefault(sym.parent, []).append(sym)

        for sym, node_id in zip(symbols.symbols, symbol_ids):
            nested = children.get(sym.name, []) if sym.kind == NodeKind.CLASS and sym.parent is None else []
            nested = [c for c in nested if sym.start_line <= c.start_line <= sym.end_line]
            chunks.extend(self.chunk_symbol(project_id, file_path, lines, sym, node_id, nested, ordered))
            if sym.parent is None:
                covered.update(range(sym.start_line, sym.end_line + 1))
                covered |= _span_lines(sym.doc_span)

        module_doc = _span_lines(symbols.doc_span)
        if module_doc:
            chunks.extend(self._pieces(
                project_id, file_path, lines, file_node_id, ChunkType.DOCUMENTATION,
                _segments(module_doc - covered), ordered,
            ))
        loose = set(range(1, len(lines) + 1)) - covered - module_doc
        chunks.extend(self._pieces(
            project_id, file_path, lines, file_node_id, ChunkType.IMPLEMENTATION,
            _segments(loose), ordered,
        ))
        return chunks

    def chunk_symbol(
        self,
        project_id: str,
        file_path: str,
        lines: List[str],
        sym: SymbolDef,
        node_id: str,
        nested: Sequence[SymbolDef] = (),
        boundaries: Tuple[int, ...] = (),
    ) -> List[Chunk]:
        doc = _span_lines(sym.doc_span)
        header = set(range(sym.start_line, sym.header_end + 1)) - doc
        body = set(range(sym.header_end + 1, sym.end_line + 1)) - doc
        for child in nested:
            body -= set(range(child.start_line, child.end_line + 1))
            body -= _span_lines(child.doc_span)

        chunks = self._pieces(
            project_id, file_path, lines, node_id, ChunkType.SIGNATURE, _segments(header), boundaries,
        )
        if doc:
            chunks.extend(self._pieces(
                project_id, file_path, lines, node_id, ChunkType.DOCUMENTATION, _segments(doc), boundaries,
            ))
        chunks.extend(self._pieces(
            project_id, file_path, lines, node_id, ChunkType.IMPLEMENTATION, _segments(body), boundaries,
        ))
        return chunks

    def _pieces(
        self,
        project_id: str,
        file_path: str,
        lines: List[str],
        node_id: str,
        chunk_type: str,
        segments: List[Tuple[int, int]],
        boundaries: Tuple[int, ...] = (),
    ) -> List[Chunk]:
        out: List[Chunk] = []
        ordinal = 0
        for start, end in segments:
            if start > len(lines):
                continue
            end = min(end, len(lines))
            for text, first, last in split_lines(
                lines[start - 1:end], start, self.max_tokens, boundaries,
            ):
                out.append(Chunk(
                    chunk_id=make_chunk_id(node_id, chunk_type, ordinal),
                    node_id=node_id,
                    chunk_type=chunk_type,
                    content=text,
                    token_count=count_tokens(text),
                    project_id=project_id,
                    file_path=file_path,
                    start_line=first,
                    end_line=last,
                    ordinal=ordinal,
                ))
                ordinal += 1
        return out
