"""sheetgate — Structured logging configuration.

structlog is routed through stdlib ``logging`` so uvicorn, httpx and our own
records share one formatter.  Records carry the ISO timestamp, level, logger
name, and the ``conversation_id`` / ``turn_id`` of the turn that produced them.

The turn loop binds the conversation and turn ids at the start of each turn;
they live in structlog's contextvars and therefore follow the asyncio task.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

_SESSION_KEYS = ("conversation_id", "turn_id")

# Third-party loggers that only speak up at warning and above.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "asyncio")


def bind_session_context(**ids: str | None) -> None:
    """Attach ``conversation_id`` / ``turn_id`` to every later record of this task."""
    unknown = set(ids) - set(_SESSION_KEYS)
    if unknown:
        raise TypeError(f"Unknown session context keys: {sorted(unknown)}")
    structlog.contextvars.bind_contextvars(**{k: v for k, v in ids.items() if v is not None})


def clear_session_context() -> None:
    structlog.contextvars.unbind_contextvars(*_SESSION_KEYS)


def _drop_color_message(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Remove uvicorn's ``color_message`` duplicate field."""
    event_dict.pop("color_message", None)
    return event_dict


def _build_handlers(formatter: logging.Formatter, log_file: str | Path | None) -> list[logging.Handler]:
    # stderr keeps the chat REPL's stdout for the conversation itself.
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    handlers: list[logging.Handler] = [console]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    return handlers


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | Path | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Call once per process (``sheetgate start`` or ``sheetgate chat``) before
    the first record is emitted.

    Args:
        level:    debug, info, warning, error or critical.
        format:   ``"console"`` for people, ``"json"`` for log shippers.
        log_file: Also append records to this file.
    """
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _drop_color_message,
    ]

    renderer: Any
    if format == "json":
        shared.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    root = logging.getLogger()
    root.handlers = _build_handlers(formatter, log_file)
    root.setLevel(level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for *name*, e.g. ``log = get_logger(__name__)``."""
    return structlog.get_logger(name)
