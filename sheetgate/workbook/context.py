"""Builds the free-form context blob attached to a conversation.

The blob is a plain-text excerpt of one or more sheets: a header line followed
by pipe-separated rows, bounded both in rows and in total characters so it
stays well inside the model's input budget.
"""

from __future__ import annotations

from dataclasses import dataclass

from sheetgate.workbook.base import WorkbookBackend, to_display

_MAX_HEADER_CHARS = 50
_MAX_CELL_CHARS = 100
_MIN_ROWS_PER_SHEET = 5


@dataclass(frozen=True)
class WorkbookContext:
    text: str
    summary: str
    sheets: tuple[str, ...]
    rows: int


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _render_row(values: list[object], limit: int) -> str:
    return " | ".join(_clip("" if v is None else str(to_display(v)), limit) for v in values)


async def build_workbook_context(
    workbook: WorkbookBackend,
    sheets: list[str],
    *,
    max_rows: int = 50,
    max_chars: int = 6000,
    include_headers: bool = True,
) -> WorkbookContext:
    """Render an excerpt of *sheets* (active sheet if empty)."""
    names = [s.strip() for s in sheets if s.strip()] or [await workbook.active_sheet()]

    # Split the row budget across sheets, never below a handful per sheet.
    per_sheet = max_rows
    if len(names) > 1 and max_rows > 10:
        per_sheet = max(max_rows // len(names), _MIN_ROWS_PER_SHEET)

    blocks: list[str] = []
    total_rows = 0
    for name in names:
        used = await workbook.used_range(name)
        data = await workbook.read_range(name, used)
        lines = [f"=== SHEET: {name} ({used}) ==="]
        start = 0
        if include_headers and data:
            lines.append(_render_row(data[0], _MAX_HEADER_CHARS))
            start = 1
        shown = data[start:per_sheet] if include_headers else data[:per_sheet]
        lines.extend(_render_row(row, _MAX_CELL_CHARS) for row in shown)
        if len(data) - start > len(shown):
            lines.append(f"[... {len(data) - start - len(shown)} more rows ...]")
        blocks.append("\n".join(lines))
        total_rows += len(shown)

    body = "\n---\n".join(blocks)
    if len(body) > max_chars:
        body = body[:max_chars] + f"\n[... context truncated at {max_chars} chars ...]"

    text = f"Workbook: {workbook.path}\nSelected sheets: {', '.join(names)}\n\nData:\n{body}"
    if len(names) > 1:
        summary = f"Context loaded: {len(names)} sheets ({total_rows} rows)"
    else:
        summary = f"Context loaded: {names[0]} ({total_rows} rows)"
    return WorkbookContext(text=text, summary=summary, sheets=tuple(names), rows=total_rows)
