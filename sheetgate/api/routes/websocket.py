"""WS /ws — Real-time session event streaming.

The ``WebSocketEventBus`` bridges the EventBus infrastructure to live
WebSocket clients.  Inject it into the session (usually inside a
``FanoutEventBus``) at startup so chat chunks, gate transitions, ledger
records and turn events reach connected UI clients as they happen::

    from sheetgate.api.routes.websocket import WebSocketEventBus, manager
    from sheetgate.events import FanoutEventBus, LogEventBus

    bus = FanoutEventBus([LogEventBus(audit_file), WebSocketEventBus(manager)])
    session = await AgentSession.create(settings, event_bus=bus)
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from sheetgate.api.schemas import WSMessage
from sheetgate.events.bus import EventBus
from sheetgate.logging import get_logger

log = get_logger(__name__)
router = APIRouter(tags=["websocket"])

_ALL = "__all__"


class ConnectionManager:
    """Manages active WebSocket connections and broadcasts session events."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, conversation_id: str | None = None) -> None:
        await websocket.accept()
        key = conversation_id or _ALL
        self._connections.setdefault(key, []).append(websocket)
        log.debug("ws_connected", conversation_id=conversation_id)

    def disconnect(self, websocket: WebSocket, conversation_id: str | None = None) -> None:
        key = conversation_id or _ALL
        connections = self._connections.get(key, [])
        if websocket in connections:
            connections.remove(websocket)
        log.debug("ws_disconnected", conversation_id=conversation_id)

    @property
    def connection_count(self) -> int:
        return sum(len(c) for c in self._connections.values())

    async def broadcast(self, message: WSMessage, conversation_id: str | None = None) -> None:
        """Send *message* to subscribers of *conversation_id* and to catch-all clients."""
        targets: list[tuple[WebSocket, str | None]] = []
        if conversation_id:
            targets.extend((ws, conversation_id) for ws in self._connections.get(conversation_id, []))
        targets.extend((ws, None) for ws in self._connections.get(_ALL, []))

        payload = message.model_dump_json()
        dead: list[tuple[WebSocket, str | None]] = []

        for ws, key in targets:
            try:
                await ws.send_text(payload)
            except Exception:
                dead.append((ws, key))

        for ws, key in dead:
            self.disconnect(ws, key)


# Module-level singleton shared between the routes and WebSocketEventBus.
manager = ConnectionManager()


class WebSocketEventBus(EventBus):
    """EventBus backend that forwards events to WebSocket clients.

    Every ``emit()`` call builds a ``WSMessage`` and broadcasts it via the
    ``ConnectionManager``.  Failures are logged and swallowed so a missing
    WebSocket client never affects a turn or an approval.
    """

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._manager = connection_manager

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self._stamp(topic, event)
        event_type = event.get("event", topic)
        conversation_id = event.get("conversation_id")  # None → catch-all clients only

        msg = WSMessage(type=str(event_type), payload=dict(event))
        try:
            await self._manager.broadcast(msg, conversation_id=conversation_id)
        except Exception as exc:
            log.warning("ws_broadcast_failed", topic=topic, error=str(exc))


@router.websocket("/ws")
async def stream_all(websocket: WebSocket) -> None:
    """Subscribe to events of every conversation."""
    await manager.connect(websocket)
    try:
        while True:
            # Keep alive: clients may send "ping".
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)


@router.websocket("/ws/conversations/{conversation_id}")
async def stream_conversation(websocket: WebSocket, conversation_id: str) -> None:
    """Subscribe to events of one conversation."""
    await manager.connect(websocket, conversation_id=conversation_id)
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket, conversation_id=conversation_id)
