"""Orchestration layer — Undo ledger.

The ledger is an append-only, batch-scoped record of the state each mutation
overwrote.  Every successful mutation appends one entry per mutated unit
(a cell, a range snapshot, a sheet) under the current batch; undo replays the
inverse of each unapproved entry through the executor, newest first, and
deletes it once it has been reverted.  Approval flips a conversation's
unapproved entries to approved, after which they are history only.

Batches:
  - ``begin_batch()`` allocates a fresh id from a process-wide counter seeded
    from the highest persisted batch id, so ids never repeat across restarts.
  - ``start_bracket()`` / ``end_bracket()`` hold one batch open across several
    approvals (multi-step edits issued from the UI).  While a bracket is open,
    ``batch_for_operation()`` returns it instead of allocating a new one.

Usage::

    ledger = UndoLedger(LedgerStore(db), event_bus=bus)
    ledger.bind(executor)
    batch_id = await ledger.begin_batch()
    await ledger.record(batch_id, LedgerEntry(conversation_id=cid, batch_id=batch_id, ...))
    restored = await ledger.undo_batch(batch_id)
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from sheetgate.events.bus import TOPIC_LEDGER, EventBus, NullEventBus
from sheetgate.exceptions import (
    LedgerError,
    NothingToUndoError,
    SheetgateError,
    UndoFailedError,
)
from sheetgate.logging import get_logger
from sheetgate.store.ledger_store import LedgerEntry, LedgerStore

log = get_logger(__name__)


class EntryReverter(Protocol):
    """Anything that can replay the inverse of a ledger entry."""

    async def revert(self, entry: LedgerEntry) -> None: ...


class UndoLedger:
    """Batch-scoped undo log over a :class:`LedgerStore`."""

    def __init__(self, store: LedgerStore, *, event_bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = event_bus or NullEventBus()
        self._reverter: EntryReverter | None = None
        self._last_batch: int | None = None
        self._bracket: int | None = None
        self._counter_lock = asyncio.Lock()

    def bind(self, reverter: EntryReverter) -> None:
        """Set the executor used to replay inverse operations."""
        self._reverter = reverter

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def begin_batch(self) -> int:
        async with self._counter_lock:
            if self._last_batch is None:
                self._last_batch = await self._store.max_batch_id()
            self._last_batch += 1
            return self._last_batch

    async def start_bracket(self) -> int:
        """Open an explicit batch bracket.  Re-entering returns the open batch."""
        if self._bracket is None:
            self._bracket = await self.begin_batch()
            log.info("undo_bracket_opened", batch_id=self._bracket)
        return self._bracket

    def end_bracket(self) -> int | None:
        batch_id, self._bracket = self._bracket, None
        if batch_id is not None:
            log.info("undo_bracket_closed", batch_id=batch_id)
        return batch_id

    @property
    def open_bracket(self) -> int | None:
        return self._bracket

    async def batch_for_operation(self) -> int:
        if self._bracket is not None:
            return self._bracket
        return await self.begin_batch()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(self, batch_id: int, entry: LedgerEntry) -> LedgerEntry:
        """Append *entry* under *batch_id*.  Call only after the mutation succeeded."""
        entry.batch_id = batch_id
        entry.approved = False
        await self._store.insert(entry)
        log.debug(
            "ledger_recorded",
            entry_id=entry.id,
            batch_id=batch_id,
            operation=entry.operation.value,
            sheet=entry.sheet,
            cell=entry.cell,
        )
        await self._bus.emit(
            TOPIC_LEDGER,
            {
                "event": "ledger_recorded",
                "conversation_id": entry.conversation_id,
                "batch_id": batch_id,
                "entry_id": entry.id,
                "operation": entry.operation.value,
                "sheet": entry.sheet,
                "cell": entry.cell,
            },
        )
        return entry

    async def discard(self, entry: LedgerEntry) -> bool:
        """Drop an unapproved entry whose mutation was rolled back before it completed."""
        assert entry.id is not None
        removed = await self._store.delete_unapproved(entry.id)
        log.info("ledger_discarded", entry_id=entry.id, removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo_batch(self, batch_id: int) -> int:
        entries = await self._store.unapproved(batch_id=batch_id)
        return await self._undo(entries, scope=f"batch {batch_id}")

    async def undo_conversation(self, conversation_id: str) -> int:
        """Undo every unapproved batch of a conversation, newest first."""
        entries = await self._store.unapproved(conversation_id=conversation_id)
        return await self._undo(entries, scope=f"conversation {conversation_id}")

    async def undo_last_batch(self, conversation_id: str) -> int:
        batch_id = await self._store.last_unapproved_batch(conversation_id)
        if batch_id is None:
            raise NothingToUndoError(f"conversation {conversation_id}")
        return await self.undo_batch(batch_id)

    async def _undo(self, entries: list[LedgerEntry], *, scope: str) -> int:
        if not entries:
            raise NothingToUndoError(scope)
        if self._reverter is None:
            raise LedgerError("No executor bound to the undo ledger")

        restored = 0
        # Entries arrive newest first: dependent mutations unwind before their bases.
        for entry in entries:
            assert entry.id is not None
            try:
                await self._reverter.revert(entry)
            except SheetgateError as exc:
                log.error(
                    "undo_failed",
                    scope=scope,
                    entry_id=entry.id,
                    operation=entry.operation.value,
                    restored=restored,
                    error=exc.message,
                )
                await self._emit_undone(entries[0].conversation_id, scope, restored, failed=True)
                raise UndoFailedError(entry.id, exc.message, restored) from exc
            await self._store.delete_unapproved(entry.id)
            restored += 1

        log.info("undo_completed", scope=scope, restored=restored)
        await self._emit_undone(entries[0].conversation_id, scope, restored)
        return restored

    async def _emit_undone(
        self, conversation_id: str, scope: str, restored: int, *, failed: bool = False
    ) -> None:
        await self._bus.emit(
            TOPIC_LEDGER,
            {
                "event": "ledger_undone",
                "conversation_id": conversation_id,
                "scope": scope,
                "restored": restored,
                "failed": failed,
            },
        )

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def approve(self, conversation_id: str) -> int:
        """Make every unapproved entry of the conversation permanent.

        Approving a conversation with nothing left to approve is a no-op.
        """
        count = await self._store.approve(conversation_id)
        if count:
            log.info("ledger_approved", conversation_id=conversation_id, approved=count)
            await self._bus.emit(
                TOPIC_LEDGER,
                {"event": "ledger_approved", "conversation_id": conversation_id, "approved": count},
            )
        return count

    async def has_pending_entries(self, conversation_id: str) -> bool:
        return await self._store.has_unapproved(conversation_id)

    async def entries(self, conversation_id: str) -> list[LedgerEntry]:
        return await self._store.entries(conversation_id)
