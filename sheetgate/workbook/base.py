"""Workbook capability — the primitives the executor drives.

``WorkbookBackend`` is the only surface through which sheetgate touches a
document.  Every method is a coroutine; implementations are expected to
serialise access internally (one document, one writer).

Conventions:
    - Sheet arguments are concrete names; callers resolve "" to the active
      sheet via ``active_sheet()`` before calling.
    - Cell values are returned raw (formulas as their ``=...`` text), so a
      value read before a mutation can be written back verbatim on undo.
    - Ranges use A1 notation; whole-column ("A:C") and whole-row ("2:4")
      spans are bounded by the sheet's used range.
"""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod
from typing import Any

StyleSnapshot = dict[str, dict[str, Any]]


class WorkbookBackend(ABC):
    """Abstract document capability."""

    @property
    @abstractmethod
    def path(self) -> str:
        """Location of the document, recorded on actions and ledger entries."""

    # ------------------------------------------------------------------
    # Sheets
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_sheets(self) -> list[str]: ...

    @abstractmethod
    async def active_sheet(self) -> str: ...

    @abstractmethod
    async def active_cell(self) -> tuple[str, str]:
        """Return ``(sheet, cell)`` of the current selection."""

    async def sheet_exists(self, name: str) -> bool:
        return name in await self.list_sheets()

    async def sheet_index(self, name: str) -> int:
        return (await self.list_sheets()).index(name)

    @abstractmethod
    async def create_sheet(self, name: str, position: int | None = None) -> None: ...

    @abstractmethod
    async def delete_sheet(self, name: str) -> None: ...

    @abstractmethod
    async def rename_sheet(self, old_name: str, new_name: str) -> None: ...

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    @abstractmethod
    async def used_range(self, sheet: str) -> str:
        """Bounding range of non-empty cells, ``"A1"`` for an empty sheet."""

    @abstractmethod
    async def read_cell(self, sheet: str, cell: str) -> Any: ...

    @abstractmethod
    async def write_cell(self, sheet: str, cell: str, value: Any) -> None: ...

    @abstractmethod
    async def read_range(self, sheet: str, ref: str) -> list[list[Any]]: ...

    @abstractmethod
    async def write_range(self, sheet: str, start_cell: str, rows: list[list[Any]]) -> str:
        """Write *rows* verbatim (``None`` clears a cell).  Returns the written range."""

    @abstractmethod
    async def clear_range(self, sheet: str, ref: str) -> None: ...

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_rows(self, sheet: str, row: int, count: int) -> None: ...

    @abstractmethod
    async def delete_rows(self, sheet: str, row: int, count: int) -> None: ...

    @abstractmethod
    async def merge_cells(self, sheet: str, ref: str) -> None: ...

    @abstractmethod
    async def unmerge_cells(self, sheet: str, ref: str) -> None: ...

    @abstractmethod
    async def merged_ranges(self, sheet: str) -> list[str]: ...

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    @abstractmethod
    async def read_styles(self, sheet: str, ref: str) -> StyleSnapshot:
        """Snapshot the formatting attributes ``format_range`` can change."""

    @abstractmethod
    async def write_styles(self, sheet: str, styles: StyleSnapshot) -> None: ...

    @abstractmethod
    async def format_range(self, sheet: str, ref: str, attributes: dict[str, Any]) -> int:
        """Apply formatting attributes; returns the number of cells touched."""

    @abstractmethod
    async def column_widths(self, sheet: str, columns: list[str]) -> dict[str, float | None]:
        """Current widths; ``None`` means the column uses the default width."""

    @abstractmethod
    async def set_column_widths(self, sheet: str, widths: dict[str, float | None]) -> None: ...

    @abstractmethod
    async def row_heights(self, sheet: str, rows: list[int]) -> dict[int, float | None]: ...

    @abstractmethod
    async def set_row_heights(self, sheet: str, heights: dict[int, float | None]) -> None: ...

    @abstractmethod
    async def auto_filter(self, sheet: str) -> str | None: ...

    @abstractmethod
    async def set_auto_filter(self, sheet: str, ref: str | None) -> None: ...

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_charts(self, sheet: str) -> list[str]: ...

    @abstractmethod
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
        """Create a chart and return its name."""

    @abstractmethod
    async def remove_chart(self, sheet: str, name: str) -> None: ...

    @abstractmethod
    async def list_tables(self, sheet: str) -> list[str]: ...

    @abstractmethod
    async def add_table(self, sheet: str, ref: str, name: str, style: str) -> None: ...

    @abstractmethod
    async def remove_table(self, sheet: str, name: str) -> None: ...

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def save(self) -> None: ...

    async def close(self) -> None:
        return None


def to_display(value: Any) -> Any:
    """Convert a raw cell value to a JSON-safe Python type."""
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (int, float, bool, str)) or value is None:
        return value
    return str(value)
