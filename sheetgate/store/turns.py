"""Resumable turn state — what a suspended turn needs to pick up again.

While an approval is outstanding the turn loop holds nothing in memory that
cannot be rebuilt: it writes one row per conversation here and deletes it when
the turn resumes, is rejected, or is cancelled.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from sheetgate.store.database import Database


@dataclass
class TurnState:
    conversation_id: str
    turn_id: str
    round: int
    pending_actions: list[dict[str, Any]] = field(default_factory=list)
    partial_text: str = ""
    query_results: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "TurnState":
        data = json.loads(raw)
        return cls(
            conversation_id=data["conversation_id"],
            turn_id=data["turn_id"],
            round=int(data.get("round", 1)),
            pending_actions=list(data.get("pending_actions") or []),
            partial_text=data.get("partial_text") or "",
            query_results=list(data.get("query_results") or []),
        )


class TurnStateStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def save(self, state: TurnState) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO pending_turns (conversation_id, turn_id, state, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    turn_id = excluded.turn_id,
                    state = excluded.state,
                    updated_at = excluded.updated_at
                """,
                (state.conversation_id, state.turn_id, state.to_json(), time.time()),
            )

    async def load(self, conversation_id: str) -> TurnState | None:
        async with self._db.conn.execute(
            "SELECT state FROM pending_turns WHERE conversation_id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return TurnState.from_json(row["state"]) if row else None

    async def latest(self) -> TurnState | None:
        """The most recently suspended turn across all conversations."""
        async with self._db.conn.execute(
            "SELECT state FROM pending_turns ORDER BY updated_at DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        return TurnState.from_json(row["state"]) if row else None

    async def delete(self, conversation_id: str) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "DELETE FROM pending_turns WHERE conversation_id = ?", (conversation_id,)
            )
