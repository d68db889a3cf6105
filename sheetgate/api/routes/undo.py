"""Undo batches, approval and revert, scoped to a conversation."""

from __future__ import annotations

from fastapi import APIRouter, status

from sheetgate.api.dependencies import AuthDep, SessionDep
from sheetgate.api.schemas import ApproveResponse, BatchResponse, PendingUndoResponse, UndoResponse

router = APIRouter(tags=["undo"])


@router.post(
    "/undo/batches",
    response_model=BatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open an explicit undo batch",
)
async def start_batch(_auth: AuthDep, session: SessionDep) -> BatchResponse:
    return BatchResponse(batch_id=await session.start_undo_batch())


@router.delete("/undo/batches/current", response_model=BatchResponse, summary="Close the open undo batch")
async def end_batch(_auth: AuthDep, session: SessionDep) -> BatchResponse:
    return BatchResponse(batch_id=await session.end_undo_batch())


@router.post(
    "/conversations/{conversation_id}/approve",
    response_model=ApproveResponse,
    summary="Make a conversation's changes permanent",
)
async def approve(conversation_id: str, _auth: AuthDep, session: SessionDep) -> ApproveResponse:
    return ApproveResponse(approved=await session.approve_undo_actions(conversation_id))


@router.post(
    "/conversations/{conversation_id}/undo",
    response_model=UndoResponse,
    summary="Revert every unapproved change of a conversation",
)
async def undo(conversation_id: str, _auth: AuthDep, session: SessionDep) -> UndoResponse:
    return UndoResponse(restored=await session.undo_by_conversation(conversation_id))


@router.post(
    "/conversations/{conversation_id}/undo/last",
    response_model=UndoResponse,
    summary="Revert the newest unapproved batch of a conversation",
)
async def undo_last(conversation_id: str, _auth: AuthDep, session: SessionDep) -> UndoResponse:
    return UndoResponse(restored=await session.undo_last_batch(conversation_id))


@router.get(
    "/conversations/{conversation_id}/undo",
    response_model=PendingUndoResponse,
    summary="Whether a conversation has revertible changes",
)
async def has_pending_undo(conversation_id: str, session: SessionDep) -> PendingUndoResponse:
    return PendingUndoResponse(pending=await session.has_pending_undo(conversation_id))
