"""Model transport — chat model protocol and stream item types.

Defines the abstract interface any chat-completion provider implements for
the turn loop.  A model round is a finite, ordered stream of items:

  - ``TextDelta``  — an incremental piece of assistant text, yielded as soon
                     as it arrives
  - ``ToolCall``   — one complete structured tool call, yielded after the
                     text of the round

Implementations:
  - NullChatModel    — no provider configured; every call fails
  - OpenAIChatModel  — any OpenAI-compatible ``/chat/completions`` endpoint
                       (``sheetgate.llm.openai``)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

from sheetgate.exceptions import ModelUnavailableError


@dataclass
class ChatMessage:
    """A single message in a chat-style conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text as emitted by the model


StreamItem = Union[TextDelta, ToolCall]


class ChatModel(ABC):
    """Abstract streaming chat model.

    ``stream`` raises :class:`ModelError` subclasses for transport and
    authentication failures; it never yields partial tool calls.
    """

    name: str = "chat-model"

    @abstractmethod
    def stream(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamItem]:
        """Run one model round and yield its items in generation order."""
        ...

    async def close(self) -> None:
        """Release any held resources (HTTP connections, etc.)."""
        return None


class NullChatModel(ChatModel):
    """Used when no provider is configured.  Always unavailable."""

    name = "null"

    async def stream(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamItem]:
        raise ModelUnavailableError("no model provider configured")
        yield  # pragma: no cover
