"""Action model — the closed set of spreadsheet mutations an agent may propose.

Every mutating tool call is parsed into an :class:`Action` whose ``payload`` is
one member of a tagged variant discriminated on ``op``.  Payloads are plain
data shapes with their own invariants; execution and rollback live in
``sheetgate.orchestration.executor``.
"""

from __future__ import annotations

import re
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

CellValue = Union[str, int, float, bool, None]

_CELL_RE = re.compile(r"^[A-Z]{1,3}[1-9][0-9]{0,6}$")
_RANGE_RE = re.compile(
    r"^("
    r"[A-Z]{1,3}[1-9][0-9]{0,6}(:[A-Z]{1,3}[1-9][0-9]{0,6})?"
    r"|[A-Z]{1,3}:[A-Z]{1,3}"
    r"|[1-9][0-9]{0,6}:[1-9][0-9]{0,6}"
    r")$"
)
_COLUMNS_RE = re.compile(r"^[A-Z]{1,3}(:[A-Z]{1,3})?$")
_ROWS_RE = re.compile(r"^[1-9][0-9]{0,6}(:[1-9][0-9]{0,6})?$")
_HEX_COLOR_RE = re.compile(r"^#?[0-9A-Fa-f]{6}$")
_SHEET_NAME_INVALID = re.compile(r"[\[\]:*?/\\]")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class OperationKind(str, Enum):
    """Closed set of mutation kinds.  Values are the ``op`` tags of payloads."""

    WRITE_CELL = "write-cell"
    WRITE_RANGE = "write-range"
    APPLY_FORMULA = "apply-formula"
    CLEAR_RANGE = "clear-range"
    COPY_RANGE = "copy-range"
    SORT_RANGE = "sort-range"
    CREATE_SHEET = "create-sheet"
    DELETE_SHEET = "delete-sheet"
    RENAME_SHEET = "rename-sheet"
    INSERT_ROWS = "insert-rows"
    DELETE_ROWS = "delete-rows"
    MERGE_CELLS = "merge-cells"
    UNMERGE_CELLS = "unmerge-cells"
    FORMAT_RANGE = "format-range"
    SET_COLUMN_WIDTH = "set-column-width"
    SET_ROW_HEIGHT = "set-row-height"
    AUTOFIT_COLUMNS = "autofit-columns"
    APPLY_FILTER = "apply-filter"
    CLEAR_FILTERS = "clear-filters"
    CREATE_CHART = "create-chart"
    CREATE_TABLE = "create-table"
    CREATE_PIVOT = "create-pivot"


# ---------------------------------------------------------------------------
# Reference validators
# ---------------------------------------------------------------------------


def _normalise_cell(value: str) -> str:
    ref = value.strip().replace("$", "").upper()
    if not _CELL_RE.match(ref):
        raise ValueError(f"'{value}' is not a cell reference like 'B2'")
    return ref


def _normalise_range(value: str) -> str:
    ref = value.strip().replace("$", "").upper()
    if not _RANGE_RE.match(ref):
        raise ValueError(f"'{value}' is not a range like 'A1:C10', 'A:C' or '1:5'")
    return ref


def _normalise_sheet_name(value: str) -> str:
    name = value.strip()
    if not name or len(name) > 31 or _SHEET_NAME_INVALID.search(name):
        raise ValueError(
            f"'{value}' is not a valid sheet name (1-31 chars, none of []:*?/\\)"
        )
    return name


CellRef = Annotated[str, AfterValidator(_normalise_cell)]
RangeRef = Annotated[str, AfterValidator(_normalise_range)]
SheetName = Annotated[str, AfterValidator(_normalise_sheet_name)]


# ---------------------------------------------------------------------------
# Payload base classes
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    op: str

    @property
    def target_ref(self) -> str:
        """Cell-or-range this payload touches, or "" for sheet-level operations."""
        return ""

    @property
    def target_sheet(self) -> str:
        return ""


class _SheetPayload(_Payload):
    sheet: str = Field(default="", description="Target sheet. Empty means the active sheet.")

    @property
    def target_sheet(self) -> str:
        return self.sheet


class _RangePayload(_SheetPayload):
    range: RangeRef = Field(description="Target range, e.g. 'A1:C10'.")

    @property
    def target_ref(self) -> str:
        return self.range


# ---------------------------------------------------------------------------
# Cell contents
# ---------------------------------------------------------------------------


class WriteCellPayload(_SheetPayload):
    op: Literal["write-cell"] = "write-cell"
    cell: CellRef = Field(description="Cell to write, e.g. 'B2'.")
    value: CellValue = Field(description="New value. Strings starting with '=' are formulas.")

    @property
    def target_ref(self) -> str:
        return self.cell


class WriteRangePayload(_SheetPayload):
    op: Literal["write-range"] = "write-range"
    start_cell: CellRef = Field(description="Top-left cell of the block to write.")
    values: list[list[CellValue]] = Field(min_length=1, description="Rows of values.")

    @property
    def target_ref(self) -> str:
        return self.start_cell


class ApplyFormulaPayload(_RangePayload):
    op: Literal["apply-formula"] = "apply-formula"
    formula: str = Field(description="Formula text; a leading '=' is added if missing.")

    @field_validator("formula")
    @classmethod
    def leading_equals(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("formula must not be empty")
        return v if v.startswith("=") else f"={v}"


class ClearRangePayload(_RangePayload):
    op: Literal["clear-range"] = "clear-range"


class CopyRangePayload(_SheetPayload):
    op: Literal["copy-range"] = "copy-range"
    source_range: RangeRef
    dest_cell: CellRef
    dest_sheet: str = Field(default="", description="Destination sheet. Empty means the source sheet.")

    @property
    def target_ref(self) -> str:
        return self.dest_cell

    @property
    def target_sheet(self) -> str:
        return self.dest_sheet or self.sheet


class SortRangePayload(_RangePayload):
    op: Literal["sort-range"] = "sort-range"
    column: int = Field(default=1, ge=1, description="1-based column within the range to sort by.")
    ascending: bool = True
    has_header: bool = Field(default=False, description="Keep the first row of the range in place.")


# ---------------------------------------------------------------------------
# Sheet management
# ---------------------------------------------------------------------------


class CreateSheetPayload(_Payload):
    op: Literal["create-sheet"] = "create-sheet"
    name: SheetName
    position: int | None = Field(default=None, ge=0, description="0-based index. Appended if None.")

    @property
    def target_sheet(self) -> str:
        return self.name


class DeleteSheetPayload(_Payload):
    op: Literal["delete-sheet"] = "delete-sheet"
    name: str

    @property
    def target_sheet(self) -> str:
        return self.name


class RenameSheetPayload(_Payload):
    op: Literal["rename-sheet"] = "rename-sheet"
    old_name: str
    new_name: SheetName

    @property
    def target_sheet(self) -> str:
        return self.old_name


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


class InsertRowsPayload(_SheetPayload):
    op: Literal["insert-rows"] = "insert-rows"
    row: int = Field(ge=1, description="Rows are inserted before this 1-based row.")
    count: int = Field(default=1, ge=1, le=10_000)

    @property
    def target_ref(self) -> str:
        return f"{self.row}:{self.row + self.count - 1}"


class DeleteRowsPayload(_SheetPayload):
    op: Literal["delete-rows"] = "delete-rows"
    row: int = Field(ge=1)
    count: int = Field(default=1, ge=1, le=10_000)

    @property
    def target_ref(self) -> str:
        return f"{self.row}:{self.row + self.count - 1}"


class MergeCellsPayload(_RangePayload):
    op: Literal["merge-cells"] = "merge-cells"


class UnmergeCellsPayload(_RangePayload):
    op: Literal["unmerge-cells"] = "unmerge-cells"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

BorderStyle = Literal["thin", "medium", "thick", "dashed", "dotted", "double"]


class FormatRangePayload(_RangePayload):
    op: Literal["format-range"] = "format-range"
    bold: bool | None = None
    italic: bool | None = None
    font_size: float | None = Field(default=None, gt=0, le=409)
    font_color: str | None = Field(default=None, description="Hex colour, e.g. '#FF0000'.")
    bg_color: str | None = Field(default=None, description="Hex fill colour, e.g. '#FFFF00'.")
    number_format: str | None = Field(default=None, description="e.g. '0.00', '#,##0', 'dd/mm/yyyy'.")
    border: BorderStyle | None = None

    @field_validator("font_color", "bg_color")
    @classmethod
    def hex_color(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not _HEX_COLOR_RE.match(v):
            raise ValueError(f"'{v}' is not a hex colour like '#FF0000'")
        return v.lstrip("#").upper()

    @model_validator(mode="after")
    def has_attribute(self) -> "FormatRangePayload":
        if not self.style_attributes():
            raise ValueError("format-range needs at least one formatting attribute")
        return self

    def style_attributes(self) -> dict[str, Any]:
        return {
            k: v
            for k, v in self.model_dump(
                include={"bold", "italic", "font_size", "font_color", "bg_color", "number_format", "border"}
            ).items()
            if v is not None
        }


class SetColumnWidthPayload(_SheetPayload):
    op: Literal["set-column-width"] = "set-column-width"
    columns: str = Field(description="Column or span, e.g. 'B' or 'A:D'.")
    width: float = Field(gt=0, le=255)

    @field_validator("columns")
    @classmethod
    def check_columns(cls, v: str) -> str:
        ref = v.strip().upper()
        if not _COLUMNS_RE.match(ref):
            raise ValueError(f"'{v}' is not a column span like 'A:D'")
        return ref

    @property
    def target_ref(self) -> str:
        return self.columns


class SetRowHeightPayload(_SheetPayload):
    op: Literal["set-row-height"] = "set-row-height"
    rows: str = Field(description="Row or span, e.g. '1' or '1:5'.")
    height: float = Field(gt=0, le=409)

    @field_validator("rows", mode="before")
    @classmethod
    def check_rows(cls, v: Any) -> str:
        ref = str(v).strip()
        if not _ROWS_RE.match(ref):
            raise ValueError(f"'{v}' is not a row span like '1:5'")
        return ref

    @property
    def target_ref(self) -> str:
        return self.rows


class AutofitColumnsPayload(_SheetPayload):
    op: Literal["autofit-columns"] = "autofit-columns"
    columns: str | None = Field(default=None, description="Column span; all used columns if omitted.")

    @field_validator("columns")
    @classmethod
    def check_columns(cls, v: str | None) -> str | None:
        if v is None:
            return v
        ref = v.strip().upper()
        if not _COLUMNS_RE.match(ref):
            raise ValueError(f"'{v}' is not a column span like 'A:D'")
        return ref

    @property
    def target_ref(self) -> str:
        return self.columns or ""


class ApplyFilterPayload(_RangePayload):
    op: Literal["apply-filter"] = "apply-filter"


class ClearFiltersPayload(_SheetPayload):
    op: Literal["clear-filters"] = "clear-filters"


# ---------------------------------------------------------------------------
# Objects
# ---------------------------------------------------------------------------


class CreateChartPayload(_RangePayload):
    op: Literal["create-chart"] = "create-chart"
    chart_type: Literal["line", "bar", "column", "pie", "scatter", "area"] = "column"
    title: str = ""
    anchor: CellRef | None = Field(default=None, description="Top-left cell for the chart. Right of the data if omitted.")
    name: str | None = None


class CreateTablePayload(_RangePayload):
    op: Literal["create-table"] = "create-table"
    name: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_.]{0,254}$")
    style: str = "TableStyleMedium2"


class PivotValueField(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    function: Literal["sum", "count", "average", "min", "max"] = "sum"


class CreatePivotPayload(_Payload):
    op: Literal["create-pivot"] = "create-pivot"
    source_sheet: str = ""
    source_range: RangeRef
    dest_sheet: SheetName
    dest_cell: CellRef = "A1"
    row_fields: list[str] = Field(min_length=1)
    value_fields: list[PivotValueField] = Field(min_length=1)
    table_name: str | None = None

    @property
    def target_ref(self) -> str:
        return self.dest_cell

    @property
    def target_sheet(self) -> str:
        return self.dest_sheet


ActionPayload = Annotated[
    Union[
        WriteCellPayload,
        WriteRangePayload,
        ApplyFormulaPayload,
        ClearRangePayload,
        CopyRangePayload,
        SortRangePayload,
        CreateSheetPayload,
        DeleteSheetPayload,
        RenameSheetPayload,
        InsertRowsPayload,
        DeleteRowsPayload,
        MergeCellsPayload,
        UnmergeCellsPayload,
        FormatRangePayload,
        SetColumnWidthPayload,
        SetRowHeightPayload,
        AutofitColumnsPayload,
        ApplyFilterPayload,
        ClearFiltersPayload,
        CreateChartPayload,
        CreateTablePayload,
        CreatePivotPayload,
    ],
    Field(discriminator="op"),
]

payload_adapter: TypeAdapter[Any] = TypeAdapter(ActionPayload)


# ---------------------------------------------------------------------------
# Action
# ---------------------------------------------------------------------------


class Locator(BaseModel):
    """Where an action lands: workbook path, sheet name, cell-or-range."""

    model_config = ConfigDict(frozen=True)

    workbook: str = ""
    sheet: str = ""
    ref: str = ""

    def __str__(self) -> str:
        if self.sheet and self.ref:
            return f"{self.sheet}!{self.ref}"
        return self.sheet or self.ref


class Action(BaseModel):
    """A single proposed mutation.  Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    payload: ActionPayload
    tool_name: str = Field(default="", description="Tool that produced this action.")
    tool_call_id: str | None = None
    workbook: str = Field(default="", description="Path of the workbook the action targets.")
    undo_data: dict[str, Any] | None = Field(
        default=None,
        description="Pre-supplied rollback payload, used instead of captured state when set.",
    )

    @property
    def kind(self) -> OperationKind:
        return OperationKind(self.payload.op)

    @property
    def target(self) -> Locator:
        return Locator(
            workbook=self.workbook,
            sheet=self.payload.target_sheet,
            ref=self.payload.target_ref,
        )

    def describe(self) -> str:
        """One-line human summary used in approval prompts."""
        details = self.payload.model_dump(exclude={"op", "sheet"}, exclude_none=True)
        parts = [f"{k}={v!r}" for k, v in details.items()]
        target = str(self.target)
        head = f"{self.kind.value} {target}" if target else self.kind.value
        return f"{head} ({', '.join(parts)})" if parts else head


def action_from_dict(data: dict[str, Any]) -> Action:
    """Rebuild an action from ``Action.model_dump(mode="json")`` output."""
    return Action.model_validate(data)
