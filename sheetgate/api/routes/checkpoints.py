"""POST /checkpoints, POST /checkpoints/{id}/restore, DELETE /checkpoints/{id}"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from sheetgate.api.dependencies import AuthDep, SessionDep
from sheetgate.api.schemas import CreateCheckpointRequest

router = APIRouter(prefix="/checkpoints", tags=["checkpoints"])


def _not_found(checkpoint_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Checkpoint '{checkpoint_id}' not found.",
    )


@router.post("", status_code=status.HTTP_201_CREATED, summary="Checkpoint the current conversation")
async def create_checkpoint(
    body: CreateCheckpointRequest, _auth: AuthDep, session: SessionDep
) -> dict[str, str]:
    return {"checkpoint_id": await session.create_checkpoint(body.name)}


@router.post("/{checkpoint_id}/restore", summary="Restore a checkpoint's history and context")
async def restore_checkpoint(checkpoint_id: str, _auth: AuthDep, session: SessionDep) -> dict[str, str]:
    if not await session.restore_checkpoint(checkpoint_id):
        raise _not_found(checkpoint_id)
    return {"conversation_id": session.conversation.id}


@router.delete("/{checkpoint_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a checkpoint")
async def delete_checkpoint(checkpoint_id: str, _auth: AuthDep, session: SessionDep) -> None:
    if not await session.delete_checkpoint(checkpoint_id):
        raise _not_found(checkpoint_id)
