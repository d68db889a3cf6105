"""Conversation store — messages, metadata and checkpoints.

A conversation is saved as one unit: the metadata row is upserted and the
message list is deleted and reinserted inside the same transaction, so a crash
mid-save leaves either the previous or the new message set, never a mix.

The metadata write is an upsert rather than ``INSERT OR REPLACE``: a replace
deletes the row first, which would cascade to the conversation's undo entries.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiosqlite

from sheetgate.exceptions import ConversationNotFoundError, StoreError
from sheetgate.logging import get_logger
from sheetgate.store.database import Database

log = get_logger(__name__)

TITLE_MAX_CHARS = 50
PREVIEW_MAX_CHARS = 100


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class Message:
    role: MessageRole
    content: str
    timestamp: float = field(default_factory=time.time)

    @property
    def hidden(self) -> bool:
        """Tool results and system notes are persisted but not displayed."""
        return self.role in (MessageRole.TOOL, MessageRole.SYSTEM)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=MessageRole(data["role"]),
            content=data["content"],
            timestamp=float(data.get("timestamp") or time.time()),
        )


@dataclass
class Conversation:
    id: str
    messages: list[Message] = field(default_factory=list)
    title: str = ""
    context: str = ""
    document_path: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def new(cls, document_path: str = "") -> "Conversation":
        return cls(id=uuid.uuid4().hex, document_path=document_path)

    def append(self, role: MessageRole, content: str) -> Message:
        message = Message(role=role, content=content)
        self.messages.append(message)
        return message

    def visible_messages(self) -> list[Message]:
        return [m for m in self.messages if not m.hidden]


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    title: str
    preview: str
    updated_at: float
    document_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "preview": self.preview,
            "updated_at": self.updated_at,
            "document_path": self.document_path,
        }


@dataclass(frozen=True)
class Checkpoint:
    id: str
    conversation_id: str
    name: str
    messages: list[Message]
    context: str
    created_at: float


def truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def derive_title(messages: list[Message]) -> str:
    """Title from the first user message, or "" if there is none yet."""
    for message in messages:
        if message.role == MessageRole.USER and message.content.strip():
            return truncate(message.content, TITLE_MAX_CHARS)
    return ""


class ConversationStore:
    """Async SQLite-backed store for conversations.

    Usage::

        store = ConversationStore(db)
        conv = Conversation.new()
        conv.append(MessageRole.USER, "set B2 to 42")
        await store.save(conv)
        loaded = await store.load(conv.id)
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def save(self, conversation: Conversation) -> None:
        """Persist metadata and replace the message list atomically."""
        if not conversation.title:
            conversation.title = derive_title(conversation.messages)
        now = time.time()
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO conversations (id, title, context, document_path, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        context = excluded.context,
                        document_path = excluded.document_path,
                        updated_at = excluded.updated_at
                    """,
                    (
                        conversation.id,
                        conversation.title,
                        conversation.context,
                        conversation.document_path,
                        conversation.created_at,
                        now,
                    ),
                )
                await conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ?", (conversation.id,)
                )
                await conn.executemany(
                    "INSERT INTO messages (conversation_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
                    [
                        (conversation.id, m.role.value, m.content, m.timestamp)
                        for m in conversation.messages
                    ],
                )
        except aiosqlite.Error as exc:
            log.error("conversation_save_failed", conversation_id=conversation.id, error=str(exc))
            raise StoreError(
                f"Failed to save conversation: {exc}", context={"conversation_id": conversation.id}
            ) from exc
        conversation.updated_at = now

    async def exists(self, conversation_id: str) -> bool:
        async with self._db.conn.execute(
            "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def load(self, conversation_id: str) -> Conversation:
        async with self._db.conn.execute(
            "SELECT id, title, context, document_path, created_at, updated_at "
            "FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise ConversationNotFoundError(conversation_id)

        async with self._db.conn.execute(
            "SELECT role, content, timestamp FROM messages WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        return Conversation(
            id=row["id"],
            title=row["title"] or "",
            context=row["context"] or "",
            document_path=row["document_path"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            messages=[
                Message(role=MessageRole(r["role"]), content=r["content"], timestamp=r["timestamp"])
                for r in rows
            ],
        )

    async def list(self) -> list[ConversationSummary]:
        """Most recently updated first, each with a preview of its last message."""
        async with self._db.conn.execute(
            """
            SELECT c.id, c.title, c.updated_at, c.document_path,
                   (SELECT m.content FROM messages m
                     WHERE m.conversation_id = c.id
                     ORDER BY m.id DESC LIMIT 1) AS last_message
            FROM conversations c
            ORDER BY c.updated_at DESC, c.rowid DESC
            """
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ConversationSummary(
                id=r["id"],
                title=r["title"] or "",
                preview=truncate(r["last_message"] or "", PREVIEW_MAX_CHARS),
                updated_at=r["updated_at"],
                document_path=r["document_path"] or "",
            )
            for r in rows
        ]

    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation with its messages, undo entries and checkpoints."""
        async with self._db.transaction() as conn:
            for table in ("messages", "undo_actions", "checkpoints", "pending_turns"):
                await conn.execute(f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,))
            cursor = await conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            deleted = cursor.rowcount > 0
        log.info("conversation_deleted", conversation_id=conversation_id, existed=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def save_checkpoint(
        self, conversation: Conversation, name: str
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            id=uuid.uuid4().hex,
            conversation_id=conversation.id,
            name=name,
            messages=list(conversation.messages),
            context=conversation.context,
            created_at=time.time(),
        )
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO checkpoints (id, conversation_id, name, messages, context, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    checkpoint.id,
                    checkpoint.conversation_id,
                    checkpoint.name,
                    json.dumps([m.to_dict() for m in checkpoint.messages]),
                    checkpoint.context,
                    checkpoint.created_at,
                ),
            )
        return checkpoint

    async def list_checkpoints(self, conversation_id: str) -> list[Checkpoint]:
        async with self._db.conn.execute(
            "SELECT * FROM checkpoints WHERE conversation_id = ? ORDER BY created_at DESC, rowid DESC",
            (conversation_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_checkpoint(r) for r in rows]

    async def load_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        async with self._db.conn.execute(
            "SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_checkpoint(row) if row else None

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        async with self._db.transaction() as conn:
            cursor = await conn.execute("DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_checkpoint(row: aiosqlite.Row) -> Checkpoint:
        return Checkpoint(
            id=row["id"],
            conversation_id=row["conversation_id"],
            name=row["name"],
            messages=[Message.from_dict(m) for m in json.loads(row["messages"])],
            context=row["context"] or "",
            created_at=row["created_at"],
        )
