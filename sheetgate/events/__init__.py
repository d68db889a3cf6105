"""Event streaming — audit trail and live UI updates."""

from sheetgate.events.bus import (
    TOPIC_CHAT,
    TOPIC_ERRORS,
    TOPIC_GATE,
    TOPIC_LEDGER,
    TOPIC_TURNS,
    EventBus,
    FanoutEventBus,
    LogEventBus,
    NullEventBus,
)

__all__ = [
    "EventBus",
    "FanoutEventBus",
    "LogEventBus",
    "NullEventBus",
    "TOPIC_CHAT",
    "TOPIC_ERRORS",
    "TOPIC_GATE",
    "TOPIC_LEDGER",
    "TOPIC_TURNS",
]
