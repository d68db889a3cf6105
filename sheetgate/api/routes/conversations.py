"""GET /conversations, POST /conversations, GET /conversations/{id}, DELETE /conversations/{id}"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from sheetgate.api.dependencies import AuthDep, SessionDep
from sheetgate.api.schemas import (
    CheckpointResponse,
    ConversationListResponse,
    ConversationResponse,
    MessageResponse,
)

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=ConversationListResponse, summary="List conversations")
async def list_conversations(session: SessionDep) -> ConversationListResponse:
    summaries = await session.list_conversations()
    return ConversationListResponse(
        conversations=[s.to_dict() for s in summaries],
        total=len(summaries),
    )


@router.post("", status_code=status.HTTP_201_CREATED, summary="Start a new conversation")
async def new_conversation(_auth: AuthDep, session: SessionDep) -> dict[str, str]:
    return {"conversation_id": await session.new_conversation()}


@router.get("/{conversation_id}", response_model=ConversationResponse, summary="Load a conversation")
async def load_conversation(conversation_id: str, _auth: AuthDep, session: SessionDep) -> ConversationResponse:
    """Load the conversation and make it the session's current one."""
    conversation = await session.load_conversation(conversation_id)
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        context=conversation.context,
        document_path=conversation.document_path,
        messages=[
            MessageResponse(role=m.role.value, content=m.content, timestamp=m.timestamp)
            for m in conversation.visible_messages()
        ],
    )


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a conversation")
async def delete_conversation(conversation_id: str, _auth: AuthDep, session: SessionDep) -> None:
    if not await session.delete_conversation(conversation_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conversation '{conversation_id}' not found.",
        )


@router.get(
    "/{conversation_id}/checkpoints",
    response_model=list[CheckpointResponse],
    summary="List a conversation's checkpoints, newest first",
)
async def list_checkpoints(conversation_id: str, session: SessionDep) -> list[CheckpointResponse]:
    return [
        CheckpointResponse(
            id=c.id,
            conversation_id=c.conversation_id,
            name=c.name,
            messages=len(c.messages),
            created_at=c.created_at,
        )
        for c in await session.list_checkpoints(conversation_id)
    ]
