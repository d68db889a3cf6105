"""API layer — FastAPI dependency injection.

The session is created once at startup and injected via FastAPI's
dependency system.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from sheetgate.config import Settings
from sheetgate.session import AgentSession

HEADER_API_TOKEN = "X-Sheetgate-Token"


def get_session(request: Request) -> AgentSession:
    return request.app.state.session  # type: ignore[no-any-return]


def get_config(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[no-any-return]


async def verify_api_token(
    request: Request,
    x_sheetgate_token: Annotated[str | None, Header(alias=HEADER_API_TOKEN)] = None,
) -> None:
    """Verify the API token if one is configured."""
    settings: Settings = request.app.state.settings
    expected = settings.server.api_token

    if expected is None:
        return  # No auth configured: local-only mode.

    if x_sheetgate_token != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Shorthand type aliases for route signatures.
SessionDep = Annotated[AgentSession, Depends(get_session)]
ConfigDep = Annotated[Settings, Depends(get_config)]
AuthDep = Annotated[None, Depends(verify_api_token)]
