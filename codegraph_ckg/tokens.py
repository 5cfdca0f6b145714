"""Token counting and token-safe text splitting.

One token is one match of :data:`TOKEN_RE`: an identifier, a number, or a
single non-whitespace symbol.  Whitespace never forms a token, so joining
pieces with newlines adds no tokens; the context budget relies on this.
"""

from __future__ import annotations

import re
from typing import List, Tuple

TOKEN_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*|\d+(?:\.\d+)?|\S")

# Identifier-ish words used for lexical matching (lowercased).
WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return sum(1 for _ in TOKEN_RE.finditer(text))


def words(text: str) -> List[str]:
    """Lowercased identifier words, with camelCase and snake_case split out."""
    out: List[str] = []
    for match in WORD_RE.finditer(text):
        word = match.group(0)
        out.append(word.lower())
        parts = [p for p in re.split(r"_+|(?<=[a-z0-9])(?=[A-Z])", word) if p]
        if len(parts) > 1:
            out.extend(p.lower() for p in parts)
    return out


def split_line(line: str, max_tokens: int) -> List[str]:
    """Split one over-long line between tokens, never inside a token."""
    pieces: List[str] = []
    start = 0
    count = 0
    last_end = 0
    for match in TOKEN_RE.finditer(line):
        if count == max_tokens:
            pieces.append(line[start:last_end])
            start = match.start()
            count = 0
        count += 1
        last_end = match.end()
    tail = line[start:]
    if tail.strip():
        pieces.append(tail)
    return pieces


def split_lines(
    lines: List[str],
    first_line: int,
    max_tokens: int,
    boundaries: Tuple[int, ...] = (),
) -> List[Tuple[str, int, int]]:
    """Pack *lines* into pieces of at most *max_tokens* tokens.

    Returns ``(text, start_line, end_line)`` triples with 1-based line
    numbers.  When a piece has to be closed early, it is cut at the latest
    preferred boundary (blank line or statement start, given as absolute
    line numbers in *boundaries*) inside the piece, falling back to the
    current line.
    """
    preferred = set(boundaries)
    pieces: List[Tuple[str, int, int]] = []
    buf: List[Tuple[int, str]] = []
    buf_tokens = 0

    def flush(upto: int) -> None:
        nonlocal buf, buf_tokens
        head = [item for item in buf if item[0] < upto]
        rest = [item for item in buf if item[0] >= upto]
        text = "\n".join(text for _, text in head)
        if text.strip():
            pieces.append((text, head[0][0], head[-1][0]))
        buf = rest
        buf_tokens = sum(count_tokens(text) for _, text in buf)

    for offset, line in enumerate(lines):
        lineno = first_line + offset
        tokens = count_tokens(line)
        if tokens > max_tokens:
            if buf:
                flush(lineno)
            for part in split_line(line, max_tokens):
                pieces.append((part, lineno, lineno))
            continue
        if buf and buf_tokens + tokens > max_tokens:
            cut = max(
                (b for b in preferred if buf[0][0] < b <= lineno),
                default=lineno,
            )
            flush(cut)
            if buf and buf_tokens + tokens > max_tokens:
                flush(lineno)
        buf.append((lineno, line))
        buf_tokens += tokens
    if buf:
        flush(first_line + len(lines))
    return pieces
