"""Shared pytest fixtures for the sheetgate test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncGenerator, AsyncIterator, Callable

import pytest
import pytest_asyncio

from sheetgate.config import Settings, override_settings
from sheetgate.llm.client import ChatMessage, ChatModel, StreamItem, TextDelta, ToolCall
from sheetgate.orchestration.executor import MutationExecutor
from sheetgate.orchestration.gate import PendingActionGate
from sheetgate.orchestration.ledger import UndoLedger
from sheetgate.session import AgentSession
from sheetgate.store.conversations import Conversation, ConversationStore
from sheetgate.store.database import Database
from sheetgate.store.ledger_store import LedgerStore
from sheetgate.store.turns import TurnStateStore
from sheetgate.workbook.openpyxl_backend import OpenpyxlWorkbook

SEED_ROWS: list[list[Any]] = [
    ["Item", "Qty", "Price"],
    ["apple", 3, 1.5],
    ["pear", 5, 2.0],
    ["plum", 1, 4.0],
]


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedChatModel(ChatModel):
    """Replays pre-scripted model rounds.

    Each round is a list of items: a ``str`` becomes a text delta, a
    ``(tool_name, args_dict)`` tuple becomes a tool call and an exception
    instance is raised at that point.  Once the script runs out the model
    answers ``"Done."``, or replays its last round when ``repeat_last`` is set.
    """

    name = "scripted"

    def __init__(self, rounds: list[list[Any]], *, repeat_last: bool = False) -> None:
        self._rounds = list(rounds)
        self._repeat_last = repeat_last
        self.calls: list[list[ChatMessage]] = []
        self.closed = False

    async def stream(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamItem]:
        index = len(self.calls)
        self.calls.append(list(messages))
        if index < len(self._rounds):
            round_items = self._rounds[index]
        elif self._repeat_last and self._rounds:
            round_items = self._rounds[-1]
        else:
            round_items = ["Done."]
        for n, item in enumerate(round_items):
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, str):
                yield TextDelta(item)
            else:
                tool_name, args = item
                yield ToolCall(id=f"call_{index}_{n}", name=tool_name, arguments=json.dumps(args))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def scripted_model() -> Callable[..., ScriptedChatModel]:
    def _make(rounds: list[list[Any]], *, repeat_last: bool = False) -> ScriptedChatModel:
        return ScriptedChatModel(rounds, repeat_last=repeat_last)

    return _make


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    settings = Settings(
        store={"db_path": str(tmp_path / "sheetgate.db")},
        workbook={"path": str(tmp_path / "book.xlsx")},
        llm={"provider": "null"},
        logging={"level": "debug", "format": "console", "audit_file": None},
    )
    override_settings(settings)
    return settings


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[Database, None]:
    database = Database(tmp_path / "store.db")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def conversation_store(db: Database) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def ledger_store(db: Database) -> LedgerStore:
    return LedgerStore(db)


@pytest.fixture
def turn_store(db: Database) -> TurnStateStore:
    return TurnStateStore(db)


@pytest_asyncio.fixture
async def conversation(conversation_store: ConversationStore) -> Conversation:
    """A conversation row that ledger entries can reference."""
    conv = Conversation.new()
    await conversation_store.save(conv)
    return conv


# ---------------------------------------------------------------------------
# Workbook + orchestration
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def workbook(tmp_path: Path) -> AsyncGenerator[OpenpyxlWorkbook, None]:
    wb = await OpenpyxlWorkbook.open(tmp_path / "book.xlsx")
    await wb.write_range("Sheet1", "A1", SEED_ROWS)
    yield wb
    await wb.close()


@pytest.fixture
def ledger(ledger_store: LedgerStore) -> UndoLedger:
    return UndoLedger(ledger_store)


@pytest.fixture
def executor(workbook: OpenpyxlWorkbook, ledger: UndoLedger) -> MutationExecutor:
    mutation_executor = MutationExecutor(workbook, ledger)
    ledger.bind(mutation_executor)
    return mutation_executor


@pytest.fixture
def gate(executor: MutationExecutor, ledger: UndoLedger) -> PendingActionGate:
    return PendingActionGate(executor, ledger)


@pytest.fixture
def make_session(
    test_settings: Settings, db: Database, workbook: OpenpyxlWorkbook
) -> Callable[..., AgentSession]:
    """Build sessions over the shared store and workbook.

    Keyword arguments override ``settings.agent`` fields.
    """

    def _make(model: ChatModel, **agent: Any) -> AgentSession:
        settings = test_settings.model_copy(deep=True)
        for key, value in agent.items():
            setattr(settings.agent, key, value)
        return AgentSession(settings, db=db, workbook=workbook, model=model)

    return _make
