"""POST /chat/messages, POST /chat/cancel, POST /chat/context, GET /chat/history"""

from __future__ import annotations

from fastapi import APIRouter, status

from sheetgate.api.dependencies import AuthDep, SessionDep
from sheetgate.api.schemas import (
    ContextResponse,
    MessageResponse,
    SendMessageRequest,
    TurnResponse,
    WorkbookContextRequest,
)
from sheetgate.logging import get_logger

log = get_logger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/messages", response_model=TurnResponse, summary="Run one agent turn")
async def send_message(body: SendMessageRequest, _auth: AuthDep, session: SessionDep) -> TurnResponse:
    """Run a turn to its end.

    Text is also streamed as ``chat_chunk`` events over ``WS /ws`` while the
    turn runs.  A ``suspended`` status means actions await approval.
    """
    reply = await session.send_message(body.message, body.context)
    return TurnResponse(**reply.to_dict())


@router.post(
    "/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel the running turn",
)
async def cancel_chat(_auth: AuthDep, session: SessionDep) -> dict[str, bool]:
    await session.cancel_chat()
    return {"cancelled": True}


@router.post("/context", response_model=ContextResponse, summary="Attach workbook context")
async def set_context(body: WorkbookContextRequest, _auth: AuthDep, session: SessionDep) -> ContextResponse:
    summary = await session.set_workbook_context(body.sheets)
    return ContextResponse(summary=summary)


@router.get("/history", response_model=list[MessageResponse], summary="Visible chat history")
async def history(_auth: AuthDep, session: SessionDep) -> list[MessageResponse]:
    return [
        MessageResponse(role=m.role.value, content=m.content, timestamp=m.timestamp)
        for m in await session.get_chat_history()
    ]
