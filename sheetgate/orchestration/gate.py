"""Orchestration layer — Pending action gate.

The gate holds at most one batch of proposed actions awaiting a human
decision.  The turn loop proposes and then returns control (it never waits on
the gate); the UI approves or rejects later, and the gate executes the batch
through the :class:`MutationExecutor`.

State machine::

    none ──propose──► pending ──approve──► executing ──► completed ──acknowledge──► none
                        │                      │
                        └──reject──► none      └──────► error ──acknowledge──► none

Approval runs the actions in order and stops at the first failure.  Actions
applied before the failure stay applied: each is already ledgered and can be
undone on its own.  A stop requested while executing (``request_stop``)
halts the batch between two actions with the same guarantee.

Every transition is logged, passed to registered listeners, and emitted on
the event bus as a ``gate_transition`` event.

Usage::

    gate = PendingActionGate(executor, ledger, event_bus=bus)
    await gate.propose(actions, conversation_id=cid)
    outcome = await gate.approve()
    await gate.acknowledge()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from sheetgate.events.bus import TOPIC_GATE, EventBus, NullEventBus
from sheetgate.exceptions import (
    AlreadyPendingError,
    ExecutionFailedError,
    InvalidTransitionError,
    SheetgateError,
)
from sheetgate.logging import get_logger
from sheetgate.orchestration.executor import ActionResult, MutationExecutor
from sheetgate.orchestration.ledger import UndoLedger
from sheetgate.protocol.actions import Action

log = get_logger(__name__)


class GateState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class GateResult:
    """Returned by ``propose``: the batch is now pending."""

    accepted: bool
    state: GateState
    actions: tuple[Action, ...]


@dataclass
class ExecutionOutcome:
    """What happened when a pending batch was approved."""

    batch_id: int
    results: list[ActionResult] = field(default_factory=list)
    error: ExecutionFailedError | None = None
    stopped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.stopped

    @property
    def applied(self) -> int:
        return sum(1 for r in self.results if r.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "succeeded": self.succeeded,
            "applied": self.applied,
            "stopped": self.stopped,
            "error": self.error.message if self.error else None,
            "results": [r.to_dict() for r in self.results],
        }


GateListener = Callable[[GateState, GateState], None]


class PendingActionGate:
    """Single-occupancy approval gate for one session.

    All methods are designed for single-event-loop use.  ``approve`` holds an
    ``asyncio.Lock`` for the whole batch, so two approvals never execute
    concurrently.
    """

    def __init__(
        self,
        executor: MutationExecutor,
        ledger: UndoLedger,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._executor = executor
        self._ledger = ledger
        self._bus = event_bus or NullEventBus()
        self._state = GateState.NONE
        self._actions: list[Action] = []
        self._conversation_id: str | None = None
        self._error: ExecutionFailedError | None = None
        self._stop_requested = False
        self._lock = asyncio.Lock()
        self._listeners: list[GateListener] = []

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def actions(self) -> list[Action]:
        return list(self._actions)

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def error(self) -> ExecutionFailedError | None:
        return self._error

    def has_pending(self) -> bool:
        return self._state == GateState.PENDING

    @property
    def is_busy(self) -> bool:
        """True while a new turn must not start."""
        return self._state in (GateState.PENDING, GateState.EXECUTING)

    def add_listener(self, listener: GateListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def propose(self, actions: list[Action], *, conversation_id: str) -> GateResult:
        if self._state != GateState.NONE:
            raise AlreadyPendingError(self._state.value)
        if not actions:
            raise ValueError("propose() needs at least one action")
        self._actions = list(actions)
        self._conversation_id = conversation_id
        self._error = None
        self._stop_requested = False
        await self._transition(GateState.PENDING, actions=len(actions))
        return GateResult(accepted=True, state=self._state, actions=tuple(self._actions))

    async def approve(self) -> ExecutionOutcome:
        """Execute the pending batch in order, stopping at the first failure.

        A failure to allocate the batch id leaves the batch pending.  Once
        executing, the gate always lands in ``completed`` or ``error``, even
        when the approving task is cancelled mid-batch.
        """
        async with self._lock:
            if self._state != GateState.PENDING:
                raise InvalidTransitionError("approve", self._state.value)
            assert self._conversation_id is not None
            batch_id = await self._ledger.batch_for_operation()
            await self._transition(GateState.EXECUTING)

            outcome = ExecutionOutcome(batch_id=batch_id)
            try:
                await self._execute(outcome)
            except asyncio.CancelledError:
                outcome.stopped = True
                log.warning("gate_execution_cancelled", batch_id=batch_id, applied=outcome.applied)
                raise
            finally:
                self._error = outcome.error
                self._actions = []
                self._stop_requested = False
                await self._transition(
                    GateState.ERROR if outcome.error else GateState.COMPLETED,
                    batch_id=batch_id,
                    applied=outcome.applied,
                )
            return outcome

    async def _execute(self, outcome: ExecutionOutcome) -> None:
        assert self._conversation_id is not None
        for index, action in enumerate(self._actions):
            if self._stop_requested:
                outcome.stopped = True
                log.info("gate_execution_stopped", before_action=index, batch_id=outcome.batch_id)
                return
            try:
                result = await self._executor.apply(
                    action, conversation_id=self._conversation_id, batch_id=outcome.batch_id
                )
            except SheetgateError as exc:
                outcome.error = ExecutionFailedError(index, exc.message, action.tool_name)
                outcome.results.append(ActionResult(action=action, success=False, message=exc.message))
                log.warning(
                    "action_failed",
                    action_index=index,
                    action_id=action.id,
                    operation=action.kind.value,
                    error=exc.message,
                )
                return
            except Exception as exc:
                outcome.error = ExecutionFailedError(index, str(exc), action.tool_name)
                outcome.results.append(ActionResult(action=action, success=False, message=str(exc)))
                log.error("action_crashed", action_index=index, action_id=action.id, exc_info=True)
                return
            outcome.results.append(result)

    async def reject(self) -> list[Action]:
        """Discard the pending batch without executing or ledgering anything."""
        if self._state != GateState.PENDING:
            raise InvalidTransitionError("reject", self._state.value)
        discarded, self._actions = self._actions, []
        await self._transition(GateState.NONE, discarded=len(discarded))
        return discarded

    async def acknowledge(self) -> None:
        """Return from ``completed`` or ``error`` to ``none``."""
        if self._state not in (GateState.COMPLETED, GateState.ERROR):
            raise InvalidTransitionError("acknowledge", self._state.value)
        self._error = None
        await self._transition(GateState.NONE)

    def request_stop(self) -> None:
        """Ask a running approval to stop before its next action."""
        if self._state == GateState.EXECUTING:
            self._stop_requested = True

    async def reset(self) -> None:
        """Bring the gate back to ``none`` from any resolvable state.

        A pending batch is discarded; a finished one is acknowledged.  Has no
        effect while executing, where ``request_stop`` applies instead.
        """
        if self._state == GateState.PENDING:
            await self.reject()
        elif self._state in (GateState.COMPLETED, GateState.ERROR):
            await self.acknowledge()

    async def _transition(self, new: GateState, **details: Any) -> None:
        old, self._state = self._state, new
        log.info("gate_transition", old=old.value, new=new.value, **details)
        for listener in self._listeners:
            try:
                listener(old, new)
            except Exception:
                log.error("gate_listener_failed", listener=repr(listener), exc_info=True)
        await self._bus.emit(
            TOPIC_GATE,
            {
                "event": "gate_transition",
                "old": old.value,
                "new": new.value,
                "conversation_id": self._conversation_id,
                **details,
            },
        )
