"""Markdown table handling and chunking for outbound text."""

from __future__ import annotations

import re
from typing import List, Optional

from feishubridge.utils.config import ChunkMode, TableMode

# Header row followed by a separator row, e.g. "| a | b |\n|---|:-:|"
_TABLE_RE = re.compile(r"\|.+\|[\r\n]+\|[-:| ]+\|")
_DOUBLE_BREAK_BETWEEN_ROWS_RE = re.compile(r"(\|[^\n]*\|)\n\n(?=\|)")
_SEPARATOR_ROW_RE = re.compile(r"^\|?\s*:?-+:?\s*(\|\s*:?-+:?\s*)*\|?$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

DEFAULT_TEXT_CHUNK_LIMIT = 4000


def has_markdown_table(text: str) -> bool:
    """Detect a markdown table (header + separator row)."""
    return bool(_TABLE_RE.search(text))


def has_open_markdown_table(text: str) -> bool:
    """Return True when the last table in ``text`` may still receive rows.

    A table is closed once a non-blank line that is not a table row follows
    it. Blank lines alone do not close a table because fragment joins can
    insert them between rows. A trailing pipe-prefixed line also counts as
    open, since it may be a header whose separator row has not arrived yet.
    """
    last_line = text.rstrip().rsplit("\n", 1)[-1].strip()
    if last_line.startswith("|"):
        return True
    matches = list(_TABLE_RE.finditer(text))
    if not matches:
        return False
    tail = text[matches[-1].end():]
    for line in tail.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("|"):
            return False
    return True


def repair_markdown_tables(text: str) -> str:
    """Collapse doubled line breaks between table rows back to a single one."""
    return _DOUBLE_BREAK_BETWEEN_ROWS_RE.sub(r"\1\n", text)


def _is_row(line: str) -> bool:
    stripped = line.strip()
    return len(stripped) > 1 and stripped.startswith("|")


def _is_separator(line: str) -> bool:
    stripped = line.strip()
    return "-" in stripped and bool(_SEPARATOR_ROW_RE.match(stripped))


def _split_cells(line: str) -> List[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [cell.strip() for cell in stripped.split("|")]


def _render_ascii(header: List[str], rows: List[List[str]]) -> List[str]:
    columns = max([len(header)] + [len(row) for row in rows])
    padded = [cells + [""] * (columns - len(cells)) for cells in [header] + rows]
    widths = [max(len(cells[i]) for cells in padded) for i in range(columns)]

    border = "+" + "+".join("-" * (width + 2) for width in widths) + "+"

    def fmt(cells: List[str]) -> str:
        return "| " + " | ".join(cell.ljust(widths[i]) for i, cell in enumerate(cells)) + " |"

    lines = [border, fmt(padded[0]), border]
    lines.extend(fmt(cells) for cells in padded[1:])
    lines.append(border)
    return lines


def _render_simple(header: List[str], rows: List[List[str]]) -> List[str]:
    return [" | ".join(cells) for cells in [header] + rows]


def convert_markdown_tables(text: str, mode: TableMode = "ascii") -> str:
    """Rewrite markdown tables for plain-text delivery.

    ``native`` leaves the text untouched, ``ascii`` draws a bordered grid and
    ``simple`` keeps one pipe-separated line per row without the separator.
    """
    if mode == "native" or not has_markdown_table(text):
        return text

    lines = repair_markdown_tables(text).split("\n")
    out: List[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if _is_row(line) and i + 1 < len(lines) and _is_separator(lines[i + 1]):
            header = _split_cells(line)
            rows: List[List[str]] = []
            i += 2
            while i < len(lines) and _is_row(lines[i]):
                rows.append(_split_cells(lines[i]))
                i += 1
            if mode == "ascii":
                out.extend(_render_ascii(header, rows))
            else:
                out.extend(_render_simple(header, rows))
            continue
        out.append(line)
        i += 1
    return "\n".join(out)


def _chunk_by_length(text: str, limit: int) -> List[str]:
    chunks: List[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = window.rfind("\n")
        if cut < limit // 2:
            cut = window.rfind(" ")
        if cut <= 0:
            chunks.append(window)
            remaining = remaining[limit:]
            continue
        chunks.append(remaining[:cut])
        remaining = remaining[cut + 1:]
    if remaining:
        chunks.append(remaining)
    return [chunk for chunk in chunks if chunk.strip()]


def _chunk_by_paragraph(text: str, limit: int) -> List[str]:
    chunks: List[str] = []
    current: Optional[str] = None
    for paragraph in _PARAGRAPH_SPLIT_RE.split(text):
        if not paragraph.strip():
            continue
        if len(paragraph) > limit:
            if current:
                chunks.append(current)
                current = None
            chunks.extend(_chunk_by_length(paragraph, limit))
            continue
        if current is None:
            current = paragraph
        elif len(current) + 2 + len(paragraph) <= limit:
            current = f"{current}\n\n{paragraph}"
        else:
            chunks.append(current)
            current = paragraph
    if current:
        chunks.append(current)
    return chunks


def chunk_text(
    text: str,
    limit: int = DEFAULT_TEXT_CHUNK_LIMIT,
    mode: ChunkMode = "length",
) -> List[str]:
    """Split text into chunks of at most ``limit`` characters.

    ``length`` packs as much as fits, breaking at the last newline (or space)
    in the window. ``newline`` keeps paragraphs together where possible.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if not text.strip():
        return []
    if mode == "newline":
        return _chunk_by_paragraph(text, limit)
    return _chunk_by_length(text, limit)
