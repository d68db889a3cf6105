"""GET /pending, POST /pending/confirm, POST /pending/reject"""

from __future__ import annotations

from fastapi import APIRouter

from sheetgate.api.dependencies import AuthDep, SessionDep
from sheetgate.api.schemas import ConfirmResponse, PendingResponse, RejectResponse
from sheetgate.session import ERROR_PREFIX

router = APIRouter(prefix="/pending", tags=["pending"])


@router.get("", response_model=PendingResponse, summary="Pending action batch")
async def get_pending(session: SessionDep) -> PendingResponse:
    """Polled by the UI after each turn to decide whether to show an approval prompt."""
    gate = session.gate
    return PendingResponse(
        pending=session.has_pending_action(),
        state=gate.state.value,
        conversation_id=gate.conversation_id if session.has_pending_action() else None,
        actions=[a.model_dump(mode="json") for a in session.pending_actions()],
    )


@router.post("/confirm", response_model=ConfirmResponse, summary="Approve the pending batch")
async def confirm(_auth: AuthDep, session: SessionDep) -> ConfirmResponse:
    text = await session.confirm_pending_action()
    return ConfirmResponse(text=text, error=text.startswith(ERROR_PREFIX))


@router.post("/reject", response_model=RejectResponse, summary="Discard the pending batch")
async def reject(_auth: AuthDep, session: SessionDep) -> RejectResponse:
    discarded = await session.reject_pending_action()
    return RejectResponse(discarded=len(discarded))
