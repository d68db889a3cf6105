"""Persistence for undo entries.

Rows are append-only while unapproved: the only writes after insertion are
``approved = 1`` and deletion of an unapproved row once it has been undone.
Approved rows are left alone until their conversation is deleted.

Cell values are stored as JSON with tagged dates so that an undo writes back
exactly the Python value that was read (a ``datetime`` stays a ``datetime``).
"""

from __future__ import annotations

import datetime
import json
import time
from dataclasses import dataclass, field
from typing import Any

import aiosqlite

from sheetgate.exceptions import StoreError
from sheetgate.logging import get_logger
from sheetgate.protocol.actions import OperationKind
from sheetgate.store.database import Database

log = get_logger(__name__)

_DATE_TAGS: dict[str, Any] = {
    "$datetime": datetime.datetime,
    "$date": datetime.date,
    "$time": datetime.time,
}


def _default(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, datetime.date):
        return {"$date": value.isoformat()}
    if isinstance(value, datetime.time):
        return {"$time": value.isoformat()}
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    return str(value)


def _object_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1:
        ((key, raw),) = obj.items()
        kind = _DATE_TAGS.get(key)
        if kind is not None and isinstance(raw, str):
            return kind.fromisoformat(raw)
    return obj


def dumps_value(value: Any) -> str:
    return json.dumps(value, default=_default)


def loads_value(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw, object_hook=_object_hook)


@dataclass
class LedgerEntry:
    """Prior state of one mutated unit (a cell, a range snapshot, a sheet...)."""

    conversation_id: str
    batch_id: int
    operation: OperationKind
    sheet: str = ""
    cell: str = ""
    old_value: Any = None
    undo_data: dict[str, Any] | None = None
    workbook: str = ""
    approved: bool = False
    created_at: float = field(default_factory=time.time)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "batch_id": self.batch_id,
            "operation": self.operation.value,
            "workbook": self.workbook,
            "sheet": self.sheet,
            "cell": self.cell,
            "old_value": json.loads(dumps_value(self.old_value)),
            "approved": self.approved,
            "created_at": self.created_at,
        }


class LedgerStore:
    """Repository over the ``undo_actions`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, entry: LedgerEntry) -> int:
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    """
                    INSERT INTO undo_actions
                        (conversation_id, batch_id, operation_type, workbook, sheet, cell,
                         old_value, undo_data, approved, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        entry.conversation_id,
                        entry.batch_id,
                        entry.operation.value,
                        entry.workbook,
                        entry.sheet,
                        entry.cell,
                        dumps_value(entry.old_value),
                        dumps_value(entry.undo_data) if entry.undo_data is not None else None,
                        entry.created_at,
                    ),
                )
                entry_id = int(cursor.lastrowid or 0)
        except aiosqlite.Error as exc:
            raise StoreError(
                f"Failed to record undo entry: {exc}",
                context={"conversation_id": entry.conversation_id, "batch_id": entry.batch_id},
            ) from exc
        entry.id = entry_id
        return entry_id

    async def unapproved(
        self, *, conversation_id: str | None = None, batch_id: int | None = None
    ) -> list[LedgerEntry]:
        """Unapproved entries in the scope, newest first (undo order)."""
        clauses = ["approved = 0"]
        params: list[Any] = []
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if batch_id is not None:
            clauses.append("batch_id = ?")
            params.append(batch_id)
        query = f"SELECT * FROM undo_actions WHERE {' AND '.join(clauses)} ORDER BY id DESC"
        async with self._db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_entry(r) for r in rows]

    async def entries(self, conversation_id: str) -> list[LedgerEntry]:
        """Every entry of a conversation, in application order."""
        async with self._db.conn.execute(
            "SELECT * FROM undo_actions WHERE conversation_id = ? ORDER BY id", (conversation_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_entry(r) for r in rows]

    async def delete_unapproved(self, entry_id: int) -> bool:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM undo_actions WHERE id = ? AND approved = 0", (entry_id,)
            )
            return cursor.rowcount > 0

    async def approve(self, conversation_id: str) -> int:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE undo_actions SET approved = 1 WHERE conversation_id = ? AND approved = 0",
                (conversation_id,),
            )
            return cursor.rowcount

    async def has_unapproved(self, conversation_id: str) -> bool:
        async with self._db.conn.execute(
            "SELECT 1 FROM undo_actions WHERE conversation_id = ? AND approved = 0 LIMIT 1",
            (conversation_id,),
        ) as cursor:
            return await cursor.fetchone() is not None

    async def last_unapproved_batch(self, conversation_id: str) -> int | None:
        async with self._db.conn.execute(
            "SELECT MAX(batch_id) AS batch_id FROM undo_actions "
            "WHERE conversation_id = ? AND approved = 0",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return row["batch_id"] if row and row["batch_id"] is not None else None

    async def max_batch_id(self) -> int:
        async with self._db.conn.execute(
            "SELECT COALESCE(MAX(batch_id), 0) AS batch_id FROM undo_actions"
        ) as cursor:
            row = await cursor.fetchone()
        return int(row["batch_id"]) if row else 0

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> LedgerEntry:
        undo_raw = row["undo_data"]
        return LedgerEntry(
            id=row["id"],
            conversation_id=row["conversation_id"],
            batch_id=row["batch_id"],
            # Rows written before operation_type existed were all cell writes.
            operation=OperationKind(row["operation_type"] or OperationKind.WRITE_CELL.value),
            workbook=row["workbook"] or "",
            sheet=row["sheet"] or "",
            cell=row["cell"] or "",
            old_value=loads_value(row["old_value"]),
            undo_data=loads_value(undo_raw) if undo_raw else None,
            approved=bool(row["approved"]),
            created_at=row["created_at"],
        )
