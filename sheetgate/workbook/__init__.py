"""Workbook layer — the cell mutation capability and its openpyxl adapter."""

from sheetgate.workbook.base import WorkbookBackend
from sheetgate.workbook.context import WorkbookContext, build_workbook_context
from sheetgate.workbook.openpyxl_backend import OpenpyxlWorkbook

__all__ = [
    "OpenpyxlWorkbook",
    "WorkbookBackend",
    "WorkbookContext",
    "build_workbook_context",
]
