"""API layer — Request and response schemas.

These are the external API contracts.  They are intentionally separate from
the internal session types so the HTTP surface can evolve on its own.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SendMessageRequest(BaseModel):
    """POST /chat/messages — Run one agent turn."""

    message: str = Field(min_length=1, description="The user's message.")
    context: str | None = Field(
        default=None,
        description="Free-form context attached to the conversation before the turn runs.",
    )


class WorkbookContextRequest(BaseModel):
    """POST /chat/context — Attach an excerpt of some sheets to the conversation."""

    sheets: list[str] = Field(
        default_factory=list,
        description="Sheets to include.  Empty means the active sheet.",
    )


class CreateCheckpointRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    uptime_seconds: float
    workbook: str
    model: str
    gate_state: str
    store_degraded: bool = Field(
        default=False,
        description="True when the on-disk store failed and history lives in memory only.",
    )


class TurnResponse(BaseModel):
    conversation_id: str
    status: str
    text: str
    pending: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None


class PendingResponse(BaseModel):
    pending: bool
    state: str
    conversation_id: str | None = None
    actions: list[dict[str, Any]] = Field(default_factory=list)


class ConfirmResponse(BaseModel):
    text: str
    error: bool = False


class RejectResponse(BaseModel):
    discarded: int


class BatchResponse(BaseModel):
    batch_id: int | None


class ApproveResponse(BaseModel):
    approved: int


class UndoResponse(BaseModel):
    restored: int


class PendingUndoResponse(BaseModel):
    pending: bool


class ContextResponse(BaseModel):
    summary: str


class MessageResponse(BaseModel):
    role: str
    content: str
    timestamp: float


class ConversationResponse(BaseModel):
    id: str
    title: str
    context: str
    document_path: str
    messages: list[MessageResponse]


class ConversationListResponse(BaseModel):
    conversations: list[dict[str, Any]]
    total: int


class CheckpointResponse(BaseModel):
    id: str
    conversation_id: str
    name: str
    messages: int
    created_at: float


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: Any | None = None
    request_id: str | None = None


class WSMessage(BaseModel):
    type: str  # "chat_chunk" | "gate_transition" | "ledger_*" | "turn_*"
    payload: dict[str, Any]
    timestamp: float = Field(default_factory=time.time)
