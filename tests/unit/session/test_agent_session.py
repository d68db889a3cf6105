"""Unit tests — AgentSession: turns, approval, undo, conversations, checkpoints."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from sheetgate.config import Settings
from sheetgate.events.bus import TOPIC_CHAT, TOPIC_ERRORS, TOPIC_TURNS
from sheetgate.exceptions import AlreadyPendingError, NothingToUndoError, WorkbookError
from sheetgate.llm.client import NullChatModel
from sheetgate.orchestration.gate import GateState
from sheetgate.orchestration.turn import TurnStatus
from sheetgate.protocol.tools import build_action
from sheetgate.session import ERROR_PREFIX, AgentSession
from sheetgate.store.conversations import MessageRole
from sheetgate.store.database import Database
from sheetgate.workbook.openpyxl_backend import OpenpyxlWorkbook

WRITE_B2 = ("write_cell", {"cell": "B2", "value": 42})


@pytest.mark.unit
class TestTurns:
    @pytest.mark.asyncio
    async def test_write_suspends_then_confirm_applies(
        self, make_session, scripted_model, workbook: OpenpyxlWorkbook,
    ) -> None:
        session = make_session(scripted_model([[WRITE_B2], ["B2 is 42 now."]]))

        reply = await session.send_message("set B2 to 42")

        assert reply.status == TurnStatus.SUSPENDED
        assert len(reply.pending) == 1
        assert session.has_pending_action()
        assert await workbook.read_cell("Sheet1", "B2") == 3

        text = await session.confirm_pending_action()

        assert text == "Applied 1 action(s).\n\nB2 is 42 now."
        assert await workbook.read_cell("Sheet1", "B2") == 42
        assert session.gate.state == GateState.NONE
        assert len(await session.ledger.entries(reply.conversation_id)) == 1
        assert await session.has_pending_undo()

    @pytest.mark.asyncio
    async def test_confirm_without_pending(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([]))
        text = await session.confirm_pending_action()
        assert text == ERROR_PREFIX + "There is no pending action."

    @pytest.mark.asyncio
    async def test_confirm_reports_model_failure(self, make_session, workbook: OpenpyxlWorkbook) -> None:
        session = make_session(NullChatModel())
        await session.gate.propose(
            [build_action("write_cell", {"cell": "B2", "value": 7})],
            conversation_id=session.conversation.id,
        )
        await session._conversations.save(session.conversation)

        text = await session.confirm_pending_action()

        assert text.startswith(ERROR_PREFIX)
        assert "no model provider configured" in text
        assert await workbook.read_cell("Sheet1", "B2") == 7

    @pytest.mark.asyncio
    async def test_reject(self, make_session, scripted_model, workbook: OpenpyxlWorkbook) -> None:
        session = make_session(scripted_model([[WRITE_B2]]))
        await session.send_message("set B2")

        discarded = await session.reject_pending_action()

        assert len(discarded) == 1
        assert not session.has_pending_action()
        assert await workbook.read_cell("Sheet1", "B2") == 3
        history = await session.get_chat_history()
        assert all(m.role != MessageRole.SYSTEM for m in history)

    @pytest.mark.asyncio
    async def test_cancel_discards_pending_batch(
        self, make_session, scripted_model, workbook: OpenpyxlWorkbook,
    ) -> None:
        session = make_session(scripted_model([[WRITE_B2], ["Fresh start."]]))
        await session.send_message("set B2")

        await session.cancel_chat()

        assert not session.has_pending_action()
        assert session.gate.state == GateState.NONE
        assert await workbook.read_cell("Sheet1", "B2") == 3
        history = await session.get_chat_history()
        assert history[-1].role == MessageRole.ASSISTANT
        assert history[-1].content == "Cancelled."
        assert not await session.has_pending_undo()

        reply = await session.send_message("hello again")
        assert reply.status == TurnStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_message_while_pending(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([[WRITE_B2]]))
        await session.send_message("set B2")
        with pytest.raises(AlreadyPendingError):
            await session.send_message("and B3")

    @pytest.mark.asyncio
    async def test_failed_turn_reply_carries_error(self, make_session) -> None:
        session = make_session(NullChatModel())
        reply = await session.send_message("hello")
        assert reply.status == TurnStatus.FAILED
        assert reply.error == "no model provider configured"
        assert reply.to_dict()["status"] == "failed"


@pytest.mark.unit
class TestEvents:
    @pytest.mark.asyncio
    async def test_chunks_and_turn_events_published(
        self, test_settings: Settings, db: Database, workbook: OpenpyxlWorkbook, scripted_model,
    ) -> None:
        bus = AsyncMock()
        session = AgentSession(
            test_settings, db=db, workbook=workbook, model=scripted_model([["Hel", "lo"]]), event_bus=bus
        )

        await session.send_message("hi")

        chat = [c.args[1] for c in bus.emit.await_args_list if c.args[0] == TOPIC_CHAT]
        assert [e["seq"] for e in chat] == [0, 1]
        assert all(e["event"] == "chat_chunk" and e["turn_id"] for e in chat)
        turns = [c.args[1]["event"] for c in bus.emit.await_args_list if c.args[0] == TOPIC_TURNS]
        assert turns == ["turn_completed"]

    @pytest.mark.asyncio
    async def test_model_error_published(
        self, test_settings: Settings, db: Database, workbook: OpenpyxlWorkbook,
    ) -> None:
        bus = AsyncMock()
        session = AgentSession(test_settings, db=db, workbook=workbook, model=NullChatModel(), event_bus=bus)

        await session.send_message("hi")

        errors = [c.args[1] for c in bus.emit.await_args_list if c.args[0] == TOPIC_ERRORS]
        assert errors[0]["event"] == "model_error"


@pytest.mark.unit
class TestUndo:
    @pytest.mark.asyncio
    async def test_undo_by_conversation_keeps_approved(
        self, make_session, workbook: OpenpyxlWorkbook, scripted_model,
    ) -> None:
        session = make_session(scripted_model([]))
        await session.apply_actions([build_action("write_cell", {"cell": "A1", "value": "Fruit"})])
        assert await session.approve_undo_actions() == 1
        await session.apply_actions(
            [build_action("write_cell", {"cell": c, "value": 0}) for c in ("B2", "B3", "B4")]
        )

        assert await session.undo_by_conversation() == 3

        assert await workbook.read_range("Sheet1", "B2:B4") == [[3], [5], [1]]
        assert await workbook.read_cell("Sheet1", "A1") == "Fruit"
        assert len(await session.ledger.entries(session.conversation.id)) == 1
        assert not await session.has_pending_undo()

    @pytest.mark.asyncio
    async def test_bracket_groups_separate_applies(
        self, make_session, workbook: OpenpyxlWorkbook, scripted_model,
    ) -> None:
        session = make_session(scripted_model([]))
        await session.apply_actions([build_action("write_cell", {"cell": "C2", "value": 9})])
        batch = await session.start_undo_batch()
        first = await session.apply_actions([build_action("write_cell", {"cell": "B2", "value": 10})])
        second = await session.apply_actions([build_action("write_cell", {"cell": "B3", "value": 20})])
        assert await session.end_undo_batch() == batch
        assert first.batch_id == second.batch_id == batch

        assert await session.undo_last_batch() == 2
        assert await workbook.read_range("Sheet1", "B2:C3") == [[3, 9], [5, 2.0]]

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([]))
        with pytest.raises(NothingToUndoError):
            await session.undo_by_conversation()


@pytest.mark.unit
class TestConversations:
    @pytest.mark.asyncio
    async def test_new_load_list_delete(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([["one"], ["two"]]))
        await session.send_message("first question")
        first_id = session.conversation.id
        second_id = await session.new_conversation()
        await session.send_message("second question")

        summaries = await session.list_conversations()
        assert {s.id for s in summaries} == {first_id, second_id}

        loaded = await session.load_conversation(first_id)
        assert loaded.title == "first question"

        assert await session.delete_conversation(first_id)
        assert session.conversation.id != first_id
        assert not await session.delete_conversation(first_id)

    @pytest.mark.asyncio
    async def test_history_hides_tool_messages(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([[("list_sheets", {})], ["One sheet."]]))
        await session.send_message("sheets?")

        history = await session.get_chat_history()

        assert [m.role for m in history] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert any(m.role == MessageRole.TOOL for m in session.conversation.messages)

    @pytest.mark.asyncio
    async def test_delete_last_and_edit(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([["a1"], ["a2"]]))
        await session.send_message("q1")
        await session.send_message("q2")

        assert await session.delete_last_messages(1) == 1
        assert [m.content for m in await session.get_chat_history()] == ["q1", "a1", "q2"]

        await session.edit_message(0, "q1 edited")
        assert [m.content for m in await session.get_chat_history()] == ["q1 edited"]

        with pytest.raises(IndexError):
            await session.edit_message(5, "nope")

    @pytest.mark.asyncio
    async def test_clear_chat(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([["hello"]]))
        await session.send_message("hi")
        await session.clear_chat()
        assert await session.get_chat_history() == []


@pytest.mark.unit
class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_create_restore_delete(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([["a1"], ["a2"]]))
        await session.send_message("q1")
        checkpoint_id = await session.create_checkpoint("after q1")
        await session.send_message("q2")

        assert await session.restore_checkpoint(checkpoint_id)
        assert [m.content for m in await session.get_chat_history()] == ["q1", "a1"]

        checkpoints = await session.list_checkpoints()
        assert [c.name for c in checkpoints] == ["after q1"]
        assert await session.delete_checkpoint(checkpoint_id)
        assert not await session.restore_checkpoint(checkpoint_id)


@pytest.mark.unit
class TestContextAndLifecycle:
    @pytest.mark.asyncio
    async def test_set_workbook_context(self, make_session, scripted_model) -> None:
        session = make_session(scripted_model([]))
        summary = await session.set_workbook_context([])
        assert summary == "Context loaded: Sheet1 (3 rows)"
        assert "Item | Qty | Price" in session.conversation.context

    @pytest.mark.asyncio
    async def test_create_requires_workbook(self, test_settings: Settings) -> None:
        test_settings.workbook.path = None
        with pytest.raises(WorkbookError):
            await AgentSession.create(test_settings)

    @pytest.mark.asyncio
    async def test_create_and_restore_pending(
        self, test_settings: Settings, tmp_path: Path, scripted_model,
    ) -> None:
        book = tmp_path / "restart.xlsx"
        session = await AgentSession.create(test_settings, book, model=scripted_model([[WRITE_B2]]))
        await session.send_message("set B2")
        conversation_id = session.conversation.id
        await session.close()

        reopened = await AgentSession.create(test_settings, book, model=scripted_model([]))
        try:
            assert await reopened.restore_pending()
            assert reopened.has_pending_action()
            assert reopened.conversation.id == conversation_id
        finally:
            await reopened.close()
