"""API layer — FastAPI application factory.

``create_app()`` is the single entry point for building the FastAPI app.
The session is wired at startup so that tests can swap in their own model
by calling ``create_app()`` with custom objects.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sheetgate import __version__
from sheetgate.api.middleware import AccessLogMiddleware, RequestIDMiddleware, build_error_handler
from sheetgate.api.routes import chat, checkpoints, conversations, health, pending, undo, websocket
from sheetgate.api.routes.websocket import WebSocketEventBus, manager as ws_manager
from sheetgate.config import Settings, get_settings
from sheetgate.events.bus import EventBus, FanoutEventBus, LogEventBus
from sheetgate.exceptions import SheetgateError
from sheetgate.llm.client import ChatModel
from sheetgate.logging import configure_logging, get_logger
from sheetgate.session import AgentSession

log = get_logger(__name__)


def create_app(settings: Settings | None = None, *, model: ChatModel | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override (used in tests).
        model:    Optional chat model override; defaults to the configured provider.

    Returns:
        A fully configured FastAPI application instance.
    """
    if settings is None:
        settings = get_settings()

    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=settings.logging.file,
    )

    app = FastAPI(
        title="sheetgate",
        description="Confirm-before-apply spreadsheet agent with per-conversation undo.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings

    # Middleware (outermost applied last)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(SheetgateError, build_error_handler())  # type: ignore[arg-type]

    # Routers
    app.include_router(health.router)
    app.include_router(chat.router)
    app.include_router(pending.router)
    app.include_router(undo.router)
    app.include_router(conversations.router)
    app.include_router(checkpoints.router)
    app.include_router(websocket.router)

    # Startup / shutdown lifecycle
    @app.on_event("startup")
    async def startup() -> None:
        log.info("server_starting", version=__version__)

        # Event bus: fanout to NDJSON audit file + live WebSocket clients.
        ws_bus = WebSocketEventBus(ws_manager)
        event_bus: EventBus
        if settings.logging.audit_file:
            event_bus = FanoutEventBus([LogEventBus(settings.logging.audit_file.expanduser()), ws_bus])
        else:
            event_bus = ws_bus

        session = await AgentSession.create(settings, model=model, event_bus=event_bus)
        if await session.restore_pending():
            log.info("pending_batch_restored", actions=len(session.pending_actions()))
        app.state.session = session

        log.info(
            "server_ready",
            host=settings.server.host,
            port=settings.server.port,
            workbook=session.workbook.path,
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        log.info("server_stopping")
        if hasattr(app.state, "session"):
            await app.state.session.close()

    return app
