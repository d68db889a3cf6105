"""Session layer — AgentSession, the backend-to-UI surface.

One ``AgentSession`` owns everything a UI talks to: the store, the undo
ledger, the mutation executor, the approval gate, the model, the turn loop,
the event bus and the current conversation.  The HTTP API and the CLI are
thin shells around it.

Every public coroutine is serialized by a single ``asyncio.Lock``: turns,
approvals, undo and conversation edits never interleave.  ``cancel_chat``
only takes it when no turn is running.

Usage::

    session = await AgentSession.create(settings, "budget.xlsx")
    reply = await session.send_message("set B2 to 42")
    if reply.pending:
        text = await session.confirm_pending_action()
    restored = await session.undo_by_conversation()
    await session.close()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

from sheetgate.config import Settings
from sheetgate.events.bus import TOPIC_CHAT, TOPIC_ERRORS, TOPIC_TURNS, EventBus, NullEventBus
from sheetgate.exceptions import ConversationNotFoundError, SheetgateError, WorkbookError
from sheetgate.llm.client import ChatModel
from sheetgate.llm.openai import build_chat_model
from sheetgate.logging import clear_session_context, get_logger
from sheetgate.orchestration.executor import MutationExecutor
from sheetgate.orchestration.gate import ExecutionOutcome, GateState, PendingActionGate
from sheetgate.orchestration.ledger import UndoLedger
from sheetgate.orchestration.messages import get_message
from sheetgate.orchestration.turn import (
    AgentTurnLoop,
    StatusMessage,
    TextChunk,
    ToolCallRequest,
    ToolResults,
    TurnDone,
    TurnEvent,
    TurnStatus,
)
from sheetgate.protocol.actions import Action
from sheetgate.store.conversations import (
    Checkpoint,
    Conversation,
    ConversationStore,
    ConversationSummary,
    Message,
)
from sheetgate.store.database import Database, open_database
from sheetgate.store.ledger_store import LedgerStore
from sheetgate.store.turns import TurnStateStore
from sheetgate.workbook.base import WorkbookBackend
from sheetgate.workbook.context import build_workbook_context
from sheetgate.workbook.openpyxl_backend import OpenpyxlWorkbook

log = get_logger(__name__)

ERROR_PREFIX = "Error: "


@dataclass
class TurnReply:
    """Result of ``send_message``."""

    conversation_id: str
    status: TurnStatus
    text: str
    pending: list[Action] = field(default_factory=list)
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "text": self.text,
            "pending": [a.model_dump(mode="json") for a in self.pending],
            "error": self.error or None,
        }


class AgentSession:
    """The single serialized execution context of one workbook session."""

    def __init__(
        self,
        settings: Settings,
        *,
        db: Database,
        workbook: WorkbookBackend,
        model: ChatModel,
        event_bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._db = db
        self._workbook = workbook
        self._model = model
        self._bus = event_bus or NullEventBus()

        self._conversations = ConversationStore(db)
        self._turns = TurnStateStore(db)
        self._ledger = UndoLedger(LedgerStore(db), event_bus=self._bus)
        self._executor = MutationExecutor(workbook, self._ledger)
        self._ledger.bind(self._executor)
        self._gate = PendingActionGate(self._executor, self._ledger, event_bus=self._bus)
        self._loop = AgentTurnLoop(
            model=model,
            gate=self._gate,
            executor=self._executor,
            conversations=self._conversations,
            turns=self._turns,
            settings=settings,
        )
        self._lock = asyncio.Lock()
        self._conversation = Conversation.new(document_path=workbook.path)

    @classmethod
    async def create(
        cls,
        settings: Settings,
        workbook_path: Path | str | None = None,
        *,
        model: ChatModel | None = None,
        event_bus: EventBus | None = None,
    ) -> "AgentSession":
        """Open the store and the workbook and wire a session around them."""
        path = workbook_path or settings.workbook.path
        if path is None:
            raise WorkbookError("No workbook configured: pass a path or set workbook.path")

        db = await open_database(settings.store.db_path)
        if db.degraded:
            log.warning("session_store_degraded", db=str(settings.store.db_path))
        try:
            workbook = await OpenpyxlWorkbook.open(path, autosave=settings.workbook.autosave)
        except WorkbookError:
            await db.close()
            raise
        session = cls(
            settings,
            db=db,
            workbook=workbook,
            model=model or build_chat_model(settings.llm),
            event_bus=event_bus,
        )
        log.info(
            "session_started",
            workbook=workbook.path,
            provider=settings.llm.provider,
            ask_before_apply=settings.agent.ask_before_apply,
        )
        return session

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def workbook(self) -> WorkbookBackend:
        return self._workbook

    @property
    def gate(self) -> PendingActionGate:
        return self._gate

    @property
    def ledger(self) -> UndoLedger:
        return self._ledger

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def store_degraded(self) -> bool:
        return self._db.degraded

    def message(self, key: str, **params: Any) -> str:
        """Localized status text in the session's language."""
        return get_message(key, self._settings.agent.language, **params)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def stream_message(self, text: str, context: str | None = None) -> AsyncIterator[TurnEvent]:
        """Run a turn, yielding its events as they happen."""
        async with self._lock:
            events = self._loop.run_turn(self._conversation, text, context)
            async for event in self._publish(events):
                yield event

    async def send_message(self, text: str, context: str | None = None) -> TurnReply:
        """Run a turn to its end.  Raises AlreadyPendingError while the gate is busy."""
        done: TurnDone | None = None
        async for event in self.stream_message(text, context):
            if isinstance(event, TurnDone):
                done = event
        assert done is not None
        return TurnReply(
            conversation_id=self._conversation.id,
            status=done.status,
            text=done.text,
            pending=self._gate.actions if done.status == TurnStatus.SUSPENDED else [],
            error=done.error,
        )

    async def confirm_pending_action(self) -> str:
        """Approve and execute the pending batch, then let the model continue.

        Returns the continuation text.  Failures come back as a string starting
        with ``"Error: "`` instead of raising.
        """
        async with self._lock:
            if not self._gate.has_pending():
                return ERROR_PREFIX + self.message("no_pending")
            try:
                conversation = await self._conversation_for(self._gate.conversation_id)
                done: TurnDone | None = None
                async for event in self._publish(self._loop.resume(conversation)):
                    if isinstance(event, TurnDone):
                        done = event
            except SheetgateError as exc:
                log.warning("confirm_failed", error=exc.message)
                await self._bus.emit(
                    TOPIC_ERRORS,
                    {"event": "confirm_failed", "error": exc.message, "code": exc.__class__.__name__},
                )
                return ERROR_PREFIX + exc.message
            assert done is not None
            if done.status == TurnStatus.FAILED:
                return ERROR_PREFIX + done.error
            return done.text

    async def reject_pending_action(self) -> list[Action]:
        async with self._lock:
            conversation = await self._conversation_for(self._gate.conversation_id)
            return await self._loop.reject(conversation)

    def has_pending_action(self) -> bool:
        return self._gate.has_pending()

    def pending_actions(self) -> list[Action]:
        return self._gate.actions

    async def cancel_chat(self) -> None:
        """Abort the running turn, or close one suspended on approval.

        Applied mutations stay ledgered.  A pending batch is discarded.
        """
        if self._lock.locked():
            self._loop.cancel()
            return
        async with self._lock:
            if self._gate.has_pending():
                conversation = await self._conversation_for(self._gate.conversation_id)
                await self._loop.cancel_pending(conversation)

    async def restore_pending(self) -> bool:
        """Re-propose the actions of a turn suspended before the last shutdown."""
        async with self._lock:
            state = await self._loop.restore()
            if state is None:
                return False
            if state.conversation_id != self._conversation.id:
                self._conversation = await self._conversations.load(state.conversation_id)
            return True

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def start_undo_batch(self) -> int:
        async with self._lock:
            return await self._ledger.start_bracket()

    async def end_undo_batch(self) -> int | None:
        async with self._lock:
            return self._ledger.end_bracket()

    async def approve_undo_actions(self, conversation_id: str | None = None) -> int:
        async with self._lock:
            return await self._ledger.approve(conversation_id or self._conversation.id)

    async def undo_by_conversation(self, conversation_id: str | None = None) -> int:
        async with self._lock:
            return await self._ledger.undo_conversation(conversation_id or self._conversation.id)

    async def undo_last_batch(self, conversation_id: str | None = None) -> int:
        async with self._lock:
            return await self._ledger.undo_last_batch(conversation_id or self._conversation.id)

    async def has_pending_undo(self, conversation_id: str | None = None) -> bool:
        async with self._lock:
            return await self._ledger.has_pending_entries(conversation_id or self._conversation.id)

    async def apply_actions(self, actions: list[Action]) -> ExecutionOutcome:
        """Apply *actions* outside a turn, through the gate, in the open bracket if any."""
        async with self._lock:
            if self._gate.state in (GateState.COMPLETED, GateState.ERROR):
                await self._gate.acknowledge()
            await self._conversations.save(self._conversation)
            await self._gate.propose(actions, conversation_id=self._conversation.id)
            outcome = await self._gate.approve()
            await self._gate.acknowledge()
            return outcome

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def new_conversation(self) -> str:
        async with self._lock:
            self._conversation = Conversation.new(document_path=self._workbook.path)
            clear_session_context()
            log.info("conversation_started", conversation_id=self._conversation.id)
            return self._conversation.id

    async def load_conversation(self, conversation_id: str) -> Conversation:
        async with self._lock:
            self._conversation = await self._conversations.load(conversation_id)
            return self._conversation

    async def list_conversations(self) -> list[ConversationSummary]:
        async with self._lock:
            return await self._conversations.list()

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._lock:
            deleted = await self._conversations.delete(conversation_id)
            if conversation_id == self._conversation.id:
                self._conversation = Conversation.new(document_path=self._workbook.path)
            return deleted

    async def get_chat_history(self) -> list[Message]:
        async with self._lock:
            return self._conversation.visible_messages()

    async def clear_chat(self) -> None:
        async with self._lock:
            self._conversation.messages.clear()
            await self._save_if_stored()

    async def delete_last_messages(self, count: int) -> int:
        """Remove the last *count* visible messages and the hidden ones after them."""
        async with self._lock:
            removed = 0
            messages = self._conversation.messages
            while messages and removed < count:
                if not messages.pop().hidden:
                    removed += 1
            await self._save_if_stored()
            return removed

    async def edit_message(self, visible_index: int, content: str) -> None:
        """Rewrite a visible message and drop everything after it."""
        async with self._lock:
            messages = self._conversation.messages
            positions = [i for i, m in enumerate(messages) if not m.hidden]
            if not 0 <= visible_index < len(positions):
                raise IndexError(f"No visible message at index {visible_index}")
            position = positions[visible_index]
            messages[position].content = content
            del messages[position + 1 :]
            await self._save_if_stored()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(self, name: str) -> str:
        async with self._lock:
            await self._conversations.save(self._conversation)
            checkpoint = await self._conversations.save_checkpoint(self._conversation, name)
            return checkpoint.id

    async def list_checkpoints(self, conversation_id: str | None = None) -> list[Checkpoint]:
        async with self._lock:
            return await self._conversations.list_checkpoints(conversation_id or self._conversation.id)

    async def restore_checkpoint(self, checkpoint_id: str) -> bool:
        """Replace the history and context of the checkpoint's conversation."""
        async with self._lock:
            checkpoint = await self._conversations.load_checkpoint(checkpoint_id)
            if checkpoint is None:
                return False
            if checkpoint.conversation_id != self._conversation.id:
                self._conversation = await self._conversations.load(checkpoint.conversation_id)
            self._conversation.messages = list(checkpoint.messages)
            self._conversation.context = checkpoint.context
            await self._conversations.save(self._conversation)
            log.info("checkpoint_restored", checkpoint_id=checkpoint_id, messages=len(checkpoint.messages))
            return True

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        async with self._lock:
            return await self._conversations.delete_checkpoint(checkpoint_id)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def set_workbook_context(self, sheets: list[str]) -> str:
        """Attach an excerpt of *sheets* to the conversation; returns a summary."""
        async with self._lock:
            cfg = self._settings.workbook
            ctx = await build_workbook_context(
                self._workbook,
                sheets,
                max_rows=cfg.max_rows_context,
                max_chars=cfg.max_context_chars,
                include_headers=cfg.include_headers,
            )
            self._conversation.context = ctx.text
            await self._save_if_stored()
            return ctx.summary

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        self._loop.cancel()
        await self._model.close()
        await self._workbook.close()
        await self._db.close()
        log.info("session_closed")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _conversation_for(self, conversation_id: str | None) -> Conversation:
        if conversation_id is None or conversation_id == self._conversation.id:
            return self._conversation
        try:
            self._conversation = await self._conversations.load(conversation_id)
        except ConversationNotFoundError:
            log.warning("pending_conversation_missing", conversation_id=conversation_id)
        return self._conversation

    async def _save_if_stored(self) -> None:
        if await self._conversations.exists(self._conversation.id):
            await self._conversations.save(self._conversation)

    async def _publish(self, events: AsyncIterator[TurnEvent]) -> AsyncIterator[TurnEvent]:
        """Forward turn events to the bus on their way to the caller."""
        conversation_id = self._conversation.id
        async for event in events:
            if isinstance(event, TextChunk):
                await self._bus.emit(
                    TOPIC_CHAT,
                    {
                        "event": "chat_chunk",
                        "conversation_id": conversation_id,
                        "turn_id": event.turn_id,
                        "seq": event.seq,
                        "text": event.text,
                    },
                )
            elif isinstance(event, ToolCallRequest):
                await self._bus.emit(
                    TOPIC_TURNS,
                    {
                        "event": "turn_actions_proposed",
                        "conversation_id": conversation_id,
                        "turn_id": event.turn_id,
                        "round": event.round,
                        "actions": [a.describe() for a in event.actions],
                        "awaiting_approval": event.awaiting_approval,
                    },
                )
            elif isinstance(event, ToolResults):
                await self._bus.emit(
                    TOPIC_TURNS,
                    {
                        "event": "turn_tool_results",
                        "conversation_id": conversation_id,
                        "turn_id": event.turn_id,
                        "round": event.round,
                        "lines": list(event.lines),
                    },
                )
            elif isinstance(event, StatusMessage):
                await self._bus.emit(
                    TOPIC_TURNS,
                    {
                        "event": "turn_status",
                        "conversation_id": conversation_id,
                        "turn_id": event.turn_id,
                        "key": event.key,
                        "text": event.text,
                    },
                )
            elif isinstance(event, TurnDone):
                await self._bus.emit(
                    TOPIC_TURNS,
                    {
                        "event": f"turn_{event.status.value}",
                        "conversation_id": conversation_id,
                        "turn_id": event.turn_id,
                        "rounds": event.rounds,
                        "error": event.error or None,
                    },
                )
                if event.status == TurnStatus.FAILED:
                    await self._bus.emit(
                        TOPIC_ERRORS,
                        {"event": "model_error", "conversation_id": conversation_id, "error": event.error},
                    )
            yield event
