"""GET /health — session health endpoint."""

from __future__ import annotations

import time

from fastapi import APIRouter

from sheetgate import __version__
from sheetgate.api.dependencies import ConfigDep, SessionDep
from sheetgate.api.schemas import HealthResponse

router = APIRouter(tags=["health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Session health check")
async def health(session: SessionDep, config: ConfigDep) -> HealthResponse:
    return HealthResponse(
        status="degraded" if session.store_degraded else "ok",
        version=__version__,
        uptime_seconds=round(time.time() - _start_time, 2),
        workbook=session.workbook.path,
        model=f"{config.llm.provider}:{config.llm.model}",
        gate_state=session.gate.state.value,
        store_degraded=session.store_degraded,
    )
