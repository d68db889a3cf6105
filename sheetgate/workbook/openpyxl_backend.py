"""openpyxl-backed workbook — the document capability used in production.

All blocking openpyxl calls are offloaded to a thread via ``asyncio.to_thread``
and serialised by a per-workbook ``threading.Lock``, so the event loop never
stalls on disk I/O and no two primitives interleave.  The workbook is loaded
once with ``data_only=False`` so formulas round-trip as text.

openpyxl does not read charts back from existing files; charts created in the
session are tracked by name in ``_charts`` until the process exits.
"""

from __future__ import annotations

import asyncio
import threading
import zipfile
from copy import copy
from pathlib import Path
from typing import Any, Callable, TypeVar

import openpyxl
from openpyxl.chart import AreaChart, BarChart, LineChart, PieChart, Reference, ScatterChart, Series
from openpyxl.styles import Border, Color, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.utils.cell import coordinate_from_string, column_index_from_string, range_boundaries
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.table import Table, TableStyleInfo

from sheetgate.exceptions import WorkbookError
from sheetgate.logging import get_logger
from sheetgate.workbook.base import StyleSnapshot, WorkbookBackend

log = get_logger(__name__)

T = TypeVar("T")

_CHART_TYPES: dict[str, Any] = {
    "line": LineChart,
    "bar": BarChart,
    "column": BarChart,
    "pie": PieChart,
    "scatter": ScatterChart,
    "area": AreaChart,
}


class OpenpyxlWorkbook(WorkbookBackend):
    """A single .xlsx file held open for the lifetime of a session."""

    def __init__(self, path: Path | str, *, autosave: bool = True) -> None:
        self._path = Path(path).expanduser().resolve()
        self._autosave = autosave
        self._wb: Any = None
        self._lock = threading.Lock()
        self._charts: dict[str, dict[str, Any]] = {}

    @classmethod
    async def open(
        cls, path: Path | str, *, autosave: bool = True, create: bool = True
    ) -> "OpenpyxlWorkbook":
        """Load *path*, creating an empty workbook there if *create* is set."""
        workbook = cls(path, autosave=autosave)
        await asyncio.to_thread(workbook._load, create)
        log.info("workbook_opened", path=str(workbook._path), sheets=workbook._wb.sheetnames)
        return workbook

    @property
    def path(self) -> str:
        return str(self._path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self, create: bool) -> None:
        if self._path.exists():
            try:
                self._wb = openpyxl.load_workbook(str(self._path), data_only=False)
            except (OSError, KeyError, ValueError, zipfile.BadZipFile, InvalidFileException) as exc:
                raise WorkbookError(f"Cannot open workbook '{self._path}': {exc}") from exc
        elif create:
            self._wb = openpyxl.Workbook()
            self._wb.active.title = "Sheet1"
            self._save_locked()
        else:
            raise WorkbookError(f"Workbook not found: {self._path}", context={"path": str(self._path)})

    def _save_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._wb.save(str(self._path))

    async def _run(self, fn: Callable[[], T], *, mutate: bool = False) -> T:
        """Run *fn* in a worker thread under the workbook lock."""

        def _locked() -> T:
            with self._lock:
                result = fn()
                if mutate and self._autosave:
                    self._save_locked()
                return result

        try:
            return await asyncio.to_thread(_locked)
        except WorkbookError:
            raise
        except (AttributeError, KeyError, ValueError, TypeError, IndexError, OSError) as exc:
            # MergedCell.value is read-only: AttributeError lands here too.
            raise WorkbookError(str(exc) or exc.__class__.__name__) from exc

    def _ws(self, name: str) -> Any:
        if name not in self._wb.sheetnames:
            raise WorkbookError(f"Sheet '{name}' not found", context={"sheet": name})
        return self._wb[name]

    @staticmethod
    def _data_bounds(ws: Any) -> tuple[int, int, int, int] | None:
        """(min_row, max_row, min_col, max_col) of non-empty cells, or None."""
        coords = [key for key, cell in ws._cells.items() if cell.value is not None]
        if not coords:
            return None
        rows = [r for r, _ in coords]
        cols = [c for _, c in coords]
        return min(rows), max(rows), min(cols), max(cols)

    def _bounds(self, ws: Any, ref: str) -> tuple[int, int, int, int]:
        """Parse ``'A1:B10'``, ``'A:C'`` or ``'2:5'`` → (min_row, max_row, min_col, max_col)."""
        min_col, min_row, max_col, max_row = range_boundaries(ref)
        data = self._data_bounds(ws) or (1, 1, 1, 1)
        if min_row is None:
            min_row, max_row = 1, data[1]
        if min_col is None:
            min_col, max_col = 1, data[3]
        return min_row, max_row, min_col, max_col

    @staticmethod
    def _cell_index(cell: str) -> tuple[int, int]:
        col, row = coordinate_from_string(cell)
        return row, column_index_from_string(col)

    # ------------------------------------------------------------------
    # Sheets
    # ------------------------------------------------------------------

    async def list_sheets(self) -> list[str]:
        return await self._run(lambda: list(self._wb.sheetnames))

    async def active_sheet(self) -> str:
        return await self._run(lambda: self._wb.active.title)

    async def active_cell(self) -> tuple[str, str]:
        def _active() -> tuple[str, str]:
            ws = self._wb.active
            selection = ws.sheet_view.selection
            cell = selection[0].activeCell if selection and selection[0].activeCell else "A1"
            return ws.title, cell

        return await self._run(_active)

    async def create_sheet(self, name: str, position: int | None = None) -> None:
        def _create() -> None:
            if name in self._wb.sheetnames:
                raise WorkbookError(f"Sheet '{name}' already exists", context={"sheet": name})
            self._wb.create_sheet(title=name, index=position)

        await self._run(_create, mutate=True)

    async def delete_sheet(self, name: str) -> None:
        def _delete() -> None:
            ws = self._ws(name)
            if len(self._wb.sheetnames) == 1:
                raise WorkbookError("Cannot delete the only sheet of a workbook", context={"sheet": name})
            self._wb.remove(ws)
            self._charts.pop(name, None)

        await self._run(_delete, mutate=True)

    async def rename_sheet(self, old_name: str, new_name: str) -> None:
        def _rename() -> None:
            ws = self._ws(old_name)
            if new_name in self._wb.sheetnames:
                raise WorkbookError(f"Sheet '{new_name}' already exists", context={"sheet": new_name})
            ws.title = new_name
            if old_name in self._charts:
                self._charts[new_name] = self._charts.pop(old_name)

        await self._run(_rename, mutate=True)

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    async def used_range(self, sheet: str) -> str:
        def _used() -> str:
            bounds = self._data_bounds(self._ws(sheet))
            if bounds is None:
                return "A1"
            min_row, max_row, min_col, max_col = bounds
            return f"{get_column_letter(min_col)}{min_row}:{get_column_letter(max_col)}{max_row}"

        return await self._run(_used)

    async def read_cell(self, sheet: str, cell: str) -> Any:
        def _read() -> Any:
            ws = self._ws(sheet)
            row, col = self._cell_index(cell)
            existing = ws._cells.get((row, col))
            return existing.value if existing is not None else None

        return await self._run(_read)

    async def write_cell(self, sheet: str, cell: str, value: Any) -> None:
        def _write() -> None:
            ws = self._ws(sheet)
            ws[cell].value = value

        await self._run(_write, mutate=True)

    async def read_range(self, sheet: str, ref: str) -> list[list[Any]]:
        def _read() -> list[list[Any]]:
            ws = self._ws(sheet)
            min_row, max_row, min_col, max_col = self._bounds(ws, ref)
            rows: list[list[Any]] = []
            for r in range(min_row, max_row + 1):
                row: list[Any] = []
                for c in range(min_col, max_col + 1):
                    existing = ws._cells.get((r, c))
                    row.append(existing.value if existing is not None else None)
                rows.append(row)
            return rows

        return await self._run(_read)

    async def write_range(self, sheet: str, start_cell: str, rows: list[list[Any]]) -> str:
        def _write() -> str:
            ws = self._ws(sheet)
            start_row, start_col = self._cell_index(start_cell)
            width = 1
            for r_offset, values in enumerate(rows):
                width = max(width, len(values))
                for c_offset, value in enumerate(values):
                    # ws.cell(value=None) leaves the old value; assign explicitly.
                    ws.cell(row=start_row + r_offset, column=start_col + c_offset).value = value
            end = f"{get_column_letter(start_col + width - 1)}{start_row + max(len(rows), 1) - 1}"
            return f"{start_cell}:{end}"

        return await self._run(_write, mutate=True)

    async def clear_range(self, sheet: str, ref: str) -> None:
        def _clear() -> None:
            ws = self._ws(sheet)
            min_row, max_row, min_col, max_col = self._bounds(ws, ref)
            for r in range(min_row, max_row + 1):
                for c in range(min_col, max_col + 1):
                    existing = ws._cells.get((r, c))
                    if existing is not None and existing.value is not None:
                        existing.value = None

        await self._run(_clear, mutate=True)

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    async def insert_rows(self, sheet: str, row: int, count: int) -> None:
        await self._run(lambda: self._ws(sheet).insert_rows(row, count), mutate=True)

    async def delete_rows(self, sheet: str, row: int, count: int) -> None:
        await self._run(lambda: self._ws(sheet).delete_rows(row, count), mutate=True)

    async def merge_cells(self, sheet: str, ref: str) -> None:
        await self._run(lambda: self._ws(sheet).merge_cells(ref), mutate=True)

    async def unmerge_cells(self, sheet: str, ref: str) -> None:
        await self._run(lambda: self._ws(sheet).unmerge_cells(ref), mutate=True)

    async def merged_ranges(self, sheet: str) -> list[str]:
        return await self._run(lambda: [str(r) for r in self._ws(sheet).merged_cells.ranges])

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    @staticmethod
    def _color_to_dict(color: Any) -> dict[str, Any] | None:
        if color is None:
            return None
        if color.type == "rgb":
            return {"rgb": color.rgb}
        if color.type == "theme":
            return {"theme": color.theme, "tint": color.tint}
        if color.type == "indexed":
            return {"indexed": color.indexed}
        return None

    @staticmethod
    def _color_from_dict(data: dict[str, Any] | None) -> Color | None:
        if not data:
            return None
        return Color(**data)

    async def read_styles(self, sheet: str, ref: str) -> StyleSnapshot:
        def _read() -> StyleSnapshot:
            ws = self._ws(sheet)
            min_row, max_row, min_col, max_col = self._bounds(ws, ref)
            snapshot: StyleSnapshot = {}
            for row in ws.iter_rows(min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col):
                for cell in row:
                    fill = cell.fill
                    solid = fill.fill_type == "solid" and fill.fgColor is not None
                    snapshot[cell.coordinate] = {
                        "bold": cell.font.bold,
                        "italic": cell.font.italic,
                        "size": cell.font.size,
                        "color": self._color_to_dict(cell.font.color),
                        "fill": self._color_to_dict(fill.fgColor) if solid else None,
                        "border": cell.border.left.style if cell.border.left is not None else None,
                        "number_format": cell.number_format,
                    }
            return snapshot

        return await self._run(_read)

    async def write_styles(self, sheet: str, styles: StyleSnapshot) -> None:
        def _write() -> None:
            ws = self._ws(sheet)
            for coordinate, style in styles.items():
                cell = ws[coordinate]
                font = copy(cell.font)
                font.bold = style.get("bold")
                font.italic = style.get("italic")
                font.size = style.get("size")
                font.color = self._color_from_dict(style.get("color"))
                cell.font = font
                fill_color = self._color_from_dict(style.get("fill"))
                cell.fill = (
                    PatternFill(fill_type="solid", fgColor=fill_color)
                    if fill_color is not None
                    else PatternFill(fill_type=None)
                )
                border_style = style.get("border")
                if border_style:
                    side = Side(style=border_style)
                    cell.border = Border(left=side, right=side, top=side, bottom=side)
                else:
                    cell.border = Border()
                cell.number_format = style.get("number_format") or "General"

        await self._run(_write, mutate=True)

    async def format_range(self, sheet: str, ref: str, attributes: dict[str, Any]) -> int:
        def _format() -> int:
            ws = self._ws(sheet)
            min_row, max_row, min_col, max_col = self._bounds(ws, ref)

            font_kwargs: dict[str, Any] = {}
            if attributes.get("bold") is not None:
                font_kwargs["bold"] = attributes["bold"]
            if attributes.get("italic") is not None:
                font_kwargs["italic"] = attributes["italic"]
            if attributes.get("font_size") is not None:
                font_kwargs["size"] = attributes["font_size"]
            if attributes.get("font_color") is not None:
                font_kwargs["color"] = attributes["font_color"]

            fill = None
            if attributes.get("bg_color") is not None:
                fill = PatternFill(fill_type="solid", fgColor=attributes["bg_color"])

            border = None
            if attributes.get("border") is not None:
                side = Side(style=attributes["border"], color="000000")
                border = Border(left=side, right=side, top=side, bottom=side)

            touched = 0
            for row in ws.iter_rows(min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col):
                for cell in row:
                    if font_kwargs:
                        font: Font = copy(cell.font)
                        for key, value in font_kwargs.items():
                            setattr(font, key, value)
                        cell.font = font
                    if fill is not None:
                        cell.fill = fill
                    if border is not None:
                        cell.border = border
                    if attributes.get("number_format") is not None:
                        cell.number_format = attributes["number_format"]
                    touched += 1
            return touched

        return await self._run(_format, mutate=True)

    async def column_widths(self, sheet: str, columns: list[str]) -> dict[str, float | None]:
        def _widths() -> dict[str, float | None]:
            dims = self._ws(sheet).column_dimensions
            return {c: (dims[c].width if c in dims else None) for c in columns}

        return await self._run(_widths)

    async def set_column_widths(self, sheet: str, widths: dict[str, float | None]) -> None:
        def _set() -> None:
            dims = self._ws(sheet).column_dimensions
            for column, width in widths.items():
                if width is None:
                    if column in dims:
                        del dims[column]
                else:
                    dims[column].width = width

        await self._run(_set, mutate=True)

    async def row_heights(self, sheet: str, rows: list[int]) -> dict[int, float | None]:
        def _heights() -> dict[int, float | None]:
            dims = self._ws(sheet).row_dimensions
            return {r: (dims[r].height if r in dims else None) for r in rows}

        return await self._run(_heights)

    async def set_row_heights(self, sheet: str, heights: dict[int, float | None]) -> None:
        def _set() -> None:
            dims = self._ws(sheet).row_dimensions
            for row, height in heights.items():
                dims[row].height = height

        await self._run(_set, mutate=True)

    async def auto_filter(self, sheet: str) -> str | None:
        return await self._run(lambda: self._ws(sheet).auto_filter.ref or None)

    async def set_auto_filter(self, sheet: str, ref: str | None) -> None:
        def _set() -> None:
            self._ws(sheet).auto_filter.ref = ref

        await self._run(_set, mutate=True)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    async def list_charts(self, sheet: str) -> list[str]:
        def _list() -> list[str]:
            ws = self._ws(sheet)
            named = self._charts.get(sheet, {})
            tracked = {id(c) for c in named.values()}
            anonymous = [f"Chart{i + 1}" for i, c in enumerate(ws._charts) if id(c) not in tracked]
            return [*named.keys(), *anonymous]

        return await self._run(_list)

    async def add_chart(
        self,
        sheet: str,
        ref: str,
        chart_type: str,
        *,
        title: str = "",
        anchor: str | None = None,
        name: str | None = None,
    ) -> str:
        def _add() -> str:
            ws = self._ws(sheet)
            chart_cls = _CHART_TYPES.get(chart_type)
            if chart_cls is None:
                raise WorkbookError(f"Unsupported chart type '{chart_type}'")
            chart = chart_cls()
            if chart_type == "bar":
                chart.type = "bar"
            elif chart_type == "column":
                chart.type = "col"
            if title:
                chart.title = title

            min_row, max_row, min_col, max_col = self._bounds(ws, ref)
            if isinstance(chart, ScatterChart):
                x_ref = Reference(ws, min_row=min_row + 1, max_row=max_row, min_col=min_col)
                for col in range(min_col + 1, max_col + 1):
                    y_ref = Reference(ws, min_row=min_row, max_row=max_row, min_col=col)
                    chart.series.append(Series(y_ref, x_ref, title_from_data=True))
            else:
                first_data_col = min_col + 1 if max_col > min_col else min_col
                data = Reference(
                    ws, min_row=min_row, max_row=max_row, min_col=first_data_col, max_col=max_col
                )
                chart.add_data(data, titles_from_data=True)
                if max_col > min_col:
                    chart.set_categories(
                        Reference(ws, min_row=min_row + 1, max_row=max_row, min_col=min_col)
                    )

            named = self._charts.setdefault(sheet, {})
            chart_name = name or f"Chart{len(ws._charts) + 1}"
            if chart_name in named:
                raise WorkbookError(f"Chart '{chart_name}' already exists on '{sheet}'")
            ws.add_chart(chart, anchor or f"{get_column_letter(max_col + 2)}{min_row}")
            named[chart_name] = chart
            return chart_name

        return await self._run(_add, mutate=True)

    async def remove_chart(self, sheet: str, name: str) -> None:
        def _remove() -> None:
            ws = self._ws(sheet)
            chart = self._charts.get(sheet, {}).pop(name, None)
            if chart is None:
                raise WorkbookError(f"Chart '{name}' not found on '{sheet}'")
            ws._charts.remove(chart)

        await self._run(_remove, mutate=True)

    async def list_tables(self, sheet: str) -> list[str]:
        return await self._run(lambda: list(self._ws(sheet).tables.keys()))

    async def add_table(self, sheet: str, ref: str, name: str, style: str) -> None:
        def _add() -> None:
            ws = self._ws(sheet)
            for other in self._wb.worksheets:
                if name in other.tables:
                    raise WorkbookError(f"Table '{name}' already exists", context={"table": name})
            table = Table(displayName=name, ref=ref)
            table.tableStyleInfo = TableStyleInfo(name=style, showRowStripes=True)
            ws.add_table(table)

        await self._run(_add, mutate=True)

    async def remove_table(self, sheet: str, name: str) -> None:
        def _remove() -> None:
            ws = self._ws(sheet)
            if name not in ws.tables:
                raise WorkbookError(f"Table '{name}' not found on '{sheet}'")
            del ws.tables[name]

        await self._run(_remove, mutate=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def save(self) -> None:
        await self._run(self._save_locked)
        log.debug("workbook_saved", path=str(self._path))
