"""Orchestration layer — Agent turn loop.

One turn runs from a user message to the final assistant message.  It may
take several model rounds, and may suspend for human approval in between.

Per round:
  1. Build the model input from the conversation (system prompt + pruned
     history) and stream one model round.  Text deltas are yielded as
     ``TextChunk`` events the moment they arrive.
  2. No tool calls: the round's text is the final answer; the turn completes.
  3. Tool calls are parsed.  Queries run immediately; malformed calls become
     ``ERROR`` result lines.  Actions are proposed to the gate:
       - ``ask_before_apply``: the turn persists its resumable state and ends
         with ``SUSPENDED``.  ``resume()`` picks it up after approval.
       - otherwise: the batch is approved and executed on the spot.
  4. The round's results are appended as a hidden ``tool`` message and the
     next round starts, up to ``max_tool_rounds`` tool-executing rounds.

The model call runs in a producer task feeding an ``asyncio.Queue``, so
``cancel()`` can abort it from any other task without waiting for the next
chunk.  Nothing is held across a suspension: the loop persists state and
returns, and the gate's lock is only held while a batch executes.

Usage::

    loop = AgentTurnLoop(model=model, gate=gate, executor=executor,
                         conversations=store, turns=turn_store, settings=settings)
    async for event in loop.run_turn(conversation, "set B2 to 42"):
        ...
    async for event in loop.resume(conversation):   # after the user approved
        ...
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Union

from sheetgate.config import Settings
from sheetgate.exceptions import (
    AlreadyPendingError,
    InvalidTransitionError,
    ModelError,
    ModelUnavailableError,
    SheetgateError,
    StoreError,
)
from sheetgate.llm.client import ChatModel, TextDelta, ToolCall
from sheetgate.llm.history import build_messages
from sheetgate.logging import bind_session_context, get_logger
from sheetgate.orchestration.executor import MutationExecutor
from sheetgate.orchestration.gate import ExecutionOutcome, GateState, PendingActionGate
from sheetgate.orchestration.messages import get_message
from sheetgate.orchestration.prompt import (
    build_system_prompt,
    error_line,
    format_tool_results,
    success_line,
)
from sheetgate.protocol.actions import Action, action_from_dict
from sheetgate.protocol.tools import parse_tool_calls, tool_definitions
from sheetgate.store.conversations import Conversation, ConversationStore, MessageRole
from sheetgate.store.turns import TurnState, TurnStateStore

log = get_logger(__name__)


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    TRUNCATED = "truncated"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextChunk:
    turn_id: str
    seq: int
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """Actions the model asked for in this round, as proposed to the gate."""

    turn_id: str
    round: int
    actions: tuple[Action, ...]
    awaiting_approval: bool


@dataclass(frozen=True)
class ToolResults:
    turn_id: str
    round: int
    lines: tuple[str, ...]


@dataclass(frozen=True)
class StatusMessage:
    turn_id: str
    key: str
    text: str


@dataclass(frozen=True)
class TurnDone:
    turn_id: str
    status: TurnStatus
    text: str
    rounds: int
    error: str = ""


TurnEvent = Union[TextChunk, ToolCallRequest, ToolResults, StatusMessage, TurnDone]


@dataclass
class _Run:
    turn_id: str
    round: int = 1
    seq: int = 0
    segments: list[str] = field(default_factory=lambda: [""])

    def add_text(self, text: str) -> None:
        self.segments[-1] += text

    def add_notice(self, text: str) -> None:
        self.segments.extend([text, ""])

    @property
    def text(self) -> str:
        return "\n\n".join(s for s in self.segments if s)


class _TurnCancelled(Exception):
    pass


_END = object()
_CANCELLED = object()


class AgentTurnLoop:
    """Drives turns for one session against one gate and one model."""

    def __init__(
        self,
        *,
        model: ChatModel,
        gate: PendingActionGate,
        executor: MutationExecutor,
        conversations: ConversationStore,
        turns: TurnStateStore,
        settings: Settings,
    ) -> None:
        self._model = model
        self._gate = gate
        self._executor = executor
        self._conversations = conversations
        self._turns = turns
        self._agent = settings.agent
        self._max_input_tokens = settings.llm.max_input_tokens
        self._tools = tool_definitions()
        self._cancelled = False
        self._stream_task: asyncio.Task[None] | None = None
        self._queue: asyncio.Queue[Any] | None = None

    @property
    def language(self) -> str:
        return self._agent.language

    def _msg(self, key: str, **params: Any) -> str:
        return get_message(key, self._agent.language, **params)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        conversation: Conversation,
        user_message: str,
        context: str | None = None,
    ) -> AsyncIterator[TurnEvent]:
        """Start a turn.  Raises AlreadyPendingError while the gate is busy."""
        if self._gate.is_busy:
            raise AlreadyPendingError(self._gate.state.value)
        if self._gate.state != GateState.NONE:
            # Starting a new turn keeps whatever the last batch did.
            await self._gate.acknowledge()

        self._cancelled = False
        run = _Run(turn_id=uuid.uuid4().hex[:12])
        bind_session_context(conversation_id=conversation.id, turn_id=run.turn_id)
        if context is not None:
            conversation.context = context
        conversation.append(MessageRole.USER, user_message)
        # Ledger rows reference the conversation row, so it must exist first.
        await self._conversations.save(conversation)
        log.info("turn_started", chars=len(user_message))

        async for event in self._drive(conversation, run):
            yield event

    async def resume(self, conversation: Conversation) -> AsyncIterator[TurnEvent]:
        """Approve the pending batch and continue the suspended turn."""
        state = await self._turns.load(conversation.id)
        if not self._gate.has_pending():
            raise InvalidTransitionError("approve", self._gate.state.value)

        self._cancelled = False
        run = _Run(turn_id=state.turn_id if state else uuid.uuid4().hex[:12])
        run.round = state.round if state else 1
        bind_session_context(conversation_id=conversation.id, turn_id=run.turn_id)
        log.info("turn_resumed", round=run.round)

        outcome = await self._gate.approve()
        lines = list(state.query_results) if state else []
        lines.extend(self._outcome_lines(outcome))
        await self._gate.acknowledge()
        await self._turns.delete(conversation.id)

        for event in self._report(conversation, run, outcome):
            yield event
        async for event in self._drive(conversation, run, carried=lines):
            yield event

    async def reject(self, conversation: Conversation) -> list[Action]:
        """Discard the pending batch and close the suspended turn."""
        discarded = await self._gate.reject()
        await self._turns.delete(conversation.id)
        summary = "; ".join(a.describe() for a in discarded)
        conversation.append(MessageRole.SYSTEM, self._msg("rejected_note", summary=summary))
        await self._conversations.save(conversation)
        log.info("turn_rejected", discarded=len(discarded))
        return discarded

    async def cancel_pending(self, conversation: Conversation) -> list[Action]:
        """Close a turn suspended on approval without applying its batch."""
        discarded = await self._gate.reject()
        await self._turns.delete(conversation.id)
        conversation.append(MessageRole.ASSISTANT, self._msg("cancelled"))
        await self._conversations.save(conversation)
        log.info("turn_cancelled_pending", discarded=len(discarded))
        return discarded

    async def restore(self, conversation_id: str | None = None) -> TurnState | None:
        """Re-propose the actions of a turn suspended before a restart."""
        state = (
            await self._turns.load(conversation_id)
            if conversation_id
            else await self._turns.latest()
        )
        if state is None or not state.pending_actions or self._gate.state != GateState.NONE:
            return None
        actions = [action_from_dict(a) for a in state.pending_actions]
        await self._gate.propose(actions, conversation_id=state.conversation_id)
        log.info("turn_restored", conversation_id=state.conversation_id, actions=len(actions))
        return state

    def cancel(self) -> None:
        """Abort the running turn at its next suspension point.

        Safe to call from any task.  An in-flight model call is cancelled
        immediately; a running batch stops before its next action.
        """
        self._cancelled = True
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        if self._queue is not None:
            self._queue.put_nowait(_CANCELLED)
        self._gate.request_stop()
        log.info("turn_cancel_requested")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _drive(
        self,
        conversation: Conversation,
        run: _Run,
        *,
        carried: list[str] | None = None,
    ) -> AsyncIterator[TurnEvent]:
        lines = carried
        while True:
            if lines is not None:
                conversation.append(MessageRole.TOOL, format_tool_results(lines))
                await self._conversations.save(conversation)
                yield ToolResults(run.turn_id, run.round, tuple(lines))
                lines = None
                if self._cancelled:
                    yield await self._finish_cancelled(conversation, run)
                    return
                if run.round >= self._agent.max_tool_rounds:
                    yield await self._finish(
                        conversation,
                        run,
                        TurnStatus.TRUNCATED,
                        notice=self._msg("truncated", rounds=self._agent.max_tool_rounds),
                    )
                    return
                run.round += 1
                if self._agent.round_delay_seconds:
                    await asyncio.sleep(self._agent.round_delay_seconds)

            round_text: list[str] = []
            calls: list[ToolCall] = []
            try:
                async for item in self._stream_round(conversation):
                    if isinstance(item, TextDelta):
                        round_text.append(item.text)
                        run.add_text(item.text)
                        yield TextChunk(run.turn_id, run.seq, item.text)
                        run.seq += 1
                    else:
                        calls.append(item)
            except _TurnCancelled:
                if round_text:
                    conversation.append(MessageRole.ASSISTANT, "".join(round_text))
                yield await self._finish_cancelled(conversation, run)
                return
            except ModelError as exc:
                log.warning("turn_model_failed", round=run.round, error=exc.message)
                if round_text:
                    conversation.append(MessageRole.ASSISTANT, "".join(round_text))
                reason = exc.reason if isinstance(exc, ModelUnavailableError) else exc.message
                yield await self._finish(
                    conversation,
                    run,
                    TurnStatus.FAILED,
                    notice=self._msg("model_error", reason=reason),
                    error=reason,
                )
                return

            text = "".join(round_text)
            if not calls:
                if text:
                    conversation.append(MessageRole.ASSISTANT, text)
                yield await self._finish(conversation, run, TurnStatus.COMPLETED)
                return
            if text:
                conversation.append(MessageRole.ASSISTANT, text)

            parsed = parse_tool_calls(calls, workbook=self._executor.workbook.path)
            lines = [error_line(f.tool_name, f.message) for f in parsed.failures]
            for query in parsed.queries:
                try:
                    lines.append(success_line(query.name, await self._executor.run_query(query)))
                except SheetgateError as exc:
                    lines.append(error_line(query.name, exc.message))
            log.info(
                "turn_round_parsed",
                round=run.round,
                actions=len(parsed.actions),
                queries=len(parsed.queries),
                failures=len(parsed.failures),
            )

            if not parsed.actions:
                continue

            ask = self._agent.ask_before_apply
            await self._gate.propose(parsed.actions, conversation_id=conversation.id)
            yield ToolCallRequest(run.turn_id, run.round, tuple(parsed.actions), awaiting_approval=ask)

            if ask:
                yield await self._suspend(conversation, run, parsed.actions, text, lines)
                return

            outcome = await self._gate.approve()
            lines.extend(self._outcome_lines(outcome))
            await self._gate.acknowledge()
            for event in self._report(conversation, run, outcome):
                yield event

    async def _stream_round(self, conversation: Conversation) -> AsyncIterator[TextDelta | ToolCall]:
        system_prompt = build_system_prompt(
            workbook=self._executor.workbook.path,
            language=self._agent.language,
            context=conversation.context,
        )
        messages = build_messages(
            conversation, system_prompt=system_prompt, max_input_tokens=self._max_input_tokens
        )
        queue: asyncio.Queue[Any] = asyncio.Queue()
        if self._cancelled:
            raise _TurnCancelled()
        task = asyncio.create_task(self._pump(messages, queue))
        self._queue, self._stream_task = queue, task
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if item is _CANCELLED:
                    raise _TurnCancelled()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self._queue, self._stream_task = None, None
            if not task.done():
                task.cancel()

    async def _pump(self, messages: list[Any], queue: asyncio.Queue[Any]) -> None:
        """Producer: run the model round and feed its items into *queue*."""
        try:
            async for item in self._model.stream(messages, self._tools):
                queue.put_nowait(item)
        except asyncio.CancelledError:
            queue.put_nowait(_CANCELLED)
            raise
        except ModelError as exc:
            queue.put_nowait(exc)
        except Exception as exc:
            log.error("model_stream_crashed", exc_info=True)
            queue.put_nowait(ModelUnavailableError(f"{exc.__class__.__name__}: {exc}"))
        else:
            queue.put_nowait(_END)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _outcome_lines(self, outcome: ExecutionOutcome) -> list[str]:
        lines = []
        for result in outcome.results:
            tool = result.action.tool_name or result.action.kind.value
            if result.success:
                lines.append(success_line(tool, result.message))
            else:
                lines.append(error_line(tool, result.message))
        if outcome.error is not None:
            lines.append(
                f"- NOTE: stopped at action #{outcome.error.action_index}; "
                "earlier actions in this batch were applied."
            )
        if outcome.stopped:
            lines.append("- NOTE: the user cancelled the remaining actions of this batch.")
        return lines

    def _outcome_status(self, run: _Run, outcome: ExecutionOutcome) -> list[StatusMessage]:
        if outcome.error is not None:
            return [
                StatusMessage(
                    run.turn_id,
                    "action_failed",
                    self._msg(
                        "action_failed",
                        index=outcome.error.action_index + 1,
                        tool=outcome.error.tool_name or "action",
                        cause=outcome.error.cause,
                    ),
                )
            ]
        if outcome.stopped:
            return [StatusMessage(run.turn_id, "actions_stopped", self._msg("actions_stopped", count=outcome.applied))]
        return [StatusMessage(run.turn_id, "actions_applied", self._msg("actions_applied", count=outcome.applied))]

    def _report(self, conversation: Conversation, run: _Run, outcome: ExecutionOutcome) -> list[StatusMessage]:
        """Record the batch outcome in the visible history and the turn text."""
        statuses = self._outcome_status(run, outcome)
        for status in statuses:
            conversation.append(MessageRole.ASSISTANT, status.text)
            run.add_notice(status.text)
        return statuses

    async def _suspend(
        self,
        conversation: Conversation,
        run: _Run,
        actions: list[Action],
        partial_text: str,
        lines: list[str],
    ) -> TurnDone:
        state = TurnState(
            conversation_id=conversation.id,
            turn_id=run.turn_id,
            round=run.round,
            pending_actions=[a.model_dump(mode="json") for a in actions],
            partial_text=partial_text,
            query_results=lines,
        )
        await self._turns.save(state)
        await self._conversations.save(conversation)
        log.info("turn_suspended", round=run.round, actions=len(actions))
        return TurnDone(run.turn_id, TurnStatus.SUSPENDED, run.text, run.round)

    async def _finish(
        self,
        conversation: Conversation,
        run: _Run,
        status: TurnStatus,
        *,
        notice: str | None = None,
        error: str = "",
    ) -> TurnDone:
        if notice:
            conversation.append(MessageRole.ASSISTANT, notice)
            run.add_notice(notice)
        try:
            await self._conversations.save(conversation)
        except StoreError as exc:
            # The in-memory conversation is intact; the caller may save again.
            log.error("turn_save_failed", error=exc.message)
            raise
        log.info("turn_finished", status=status.value, rounds=run.round)
        return TurnDone(run.turn_id, status, run.text, run.round, error=error)

    async def _finish_cancelled(self, conversation: Conversation, run: _Run) -> TurnDone:
        if self._gate.state != GateState.EXECUTING:
            await self._gate.reset()
        await self._turns.delete(conversation.id)
        self._cancelled = False
        return await self._finish(conversation, run, TurnStatus.CANCELLED, notice=self._msg("cancelled"))
