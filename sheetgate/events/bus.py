"""Event streaming infrastructure — EventBus protocol and implementations.

Every observable occurrence in the action pipeline is emitted as a structured
dict to a topic: gate transitions, ledger records, undos and approvals, turn
lifecycle, and the incremental assistant text of a turn.  Consumers (the
NDJSON audit log, WebSocket clients) react to them independently.

Architecture:
                                               ┌────────────────────┐
  PendingActionGate ──emit("sheetgate.gate")──►│                    │◄── LogEventBus (audit)
  UndoLedger ───────emit("sheetgate.ledger")──►│    EventBus impl   │
  AgentSession ─────emit("sheetgate.chat")────►│                    │◄── WebSocketEventBus
  AgentSession ─────emit("sheetgate.turns")───►│                    │
                                               └────────────────────┘

Swap the backend by injecting a different EventBus implementation:
  - NullEventBus      → default (no-op)
  - LogEventBus       → NDJSON append-only audit file
  - FanoutEventBus    → several backends at once
  - WebSocketEventBus → live UI clients (``sheetgate.api.routes.websocket``)

Standard topic names:
  TOPIC_CHAT   = "sheetgate.chat"   — chat_chunk events (turn_id, seq, text)
  TOPIC_GATE   = "sheetgate.gate"   — gate_transition events
  TOPIC_LEDGER = "sheetgate.ledger" — ledger_recorded / ledger_undone / ledger_approved
  TOPIC_TURNS  = "sheetgate.turns"  — turn_actions_proposed / turn_tool_results /
                                      turn_status / turn_<status> (turn_completed, ...)
  TOPIC_ERRORS = "sheetgate.errors" — failures turned into status messages
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from sheetgate.logging import get_logger

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# Standard topic constants
# ---------------------------------------------------------------------------

TOPIC_CHAT = "sheetgate.chat"
TOPIC_GATE = "sheetgate.gate"
TOPIC_LEDGER = "sheetgate.ledger"
TOPIC_TURNS = "sheetgate.turns"
TOPIC_ERRORS = "sheetgate.errors"


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class EventBus(ABC):
    """Abstract event bus.  All implementations must be safe for concurrent async use.

    An event is a plain dict.  The bus adds a ``_topic`` key and a
    ``_timestamp`` (Unix epoch float) before forwarding to the backend.
    """

    @abstractmethod
    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        """Publish *event* to *topic*.

        This method must not raise — failures are logged and swallowed so that
        a backend outage never propagates into the mutation path.
        """

    def _stamp(self, topic: str, event: dict[str, Any]) -> dict[str, Any]:
        """Add metadata fields to *event* in-place and return it."""
        event.setdefault("_topic", topic)
        event.setdefault("_timestamp", time.time())
        return event


# ---------------------------------------------------------------------------
# NullEventBus: default
# ---------------------------------------------------------------------------


class NullEventBus(EventBus):
    """Discards all events, so producers never need to check for a bus."""

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        pass


# ---------------------------------------------------------------------------
# LogEventBus: NDJSON audit file
# ---------------------------------------------------------------------------


class LogEventBus(EventBus):
    """Writes events as NDJSON to a file — one line per event, append-only.

    Chat chunks are skipped: the audit trail records what changed in the
    workbook and who allowed it, not the text the model produced.

    Usage::

        bus = LogEventBus(Path("~/.sheetgate/audit.ndjson"))
        await bus.emit(TOPIC_LEDGER, {"event": "ledger_recorded", "batch_id": 3})
    """

    def __init__(self, log_file: Path | None = None, *, skip_topics: tuple[str, ...] = (TOPIC_CHAT,)) -> None:
        self._file = log_file.expanduser() if log_file else None
        self._skip = skip_topics
        self._lock = asyncio.Lock()

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self._stamp(topic, event)
        if self._file is None or topic in self._skip:
            return
        line = json.dumps(event, default=str) + "\n"
        async with self._lock:
            try:
                self._file.parent.mkdir(parents=True, exist_ok=True)
                with self._file.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as exc:
                log.error("event_bus_write_failed", topic=topic, error=str(exc))


# ---------------------------------------------------------------------------
# FanoutEventBus: broadcast to several backends
# ---------------------------------------------------------------------------


class FanoutEventBus(EventBus):
    """Routes each event to multiple EventBus backends in parallel.

    Usage::

        bus = FanoutEventBus([
            LogEventBus(Path("~/.sheetgate/audit.ndjson")),
            websocket_bus,
        ])
    """

    def __init__(self, backends: list[EventBus]) -> None:
        self._backends = backends

    def add(self, backend: EventBus) -> None:
        self._backends.append(backend)

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self._stamp(topic, event)
        results = await asyncio.gather(
            *(b.emit(topic, dict(event)) for b in self._backends),
            return_exceptions=True,
        )
        for backend, result in zip(self._backends, results):
            if isinstance(result, Exception):
                log.error(
                    "event_bus_backend_failed",
                    backend=backend.__class__.__name__,
                    topic=topic,
                    error=str(result),
                )
