"""Conversation history → model input.

Builds the message list for one model round from the stored conversation:
the system prompt first, then the history in order.  Two rules apply:

  - ``tool`` messages are sent with the ``system`` role, since the tool-result
    text is not tied to tool-call ids the endpoint would validate.
  - The list is pruned to the input token budget, estimated at four
    characters per token.  The leading system prompt and the latest message
    are always kept; older messages are dropped from the front.  Hidden
    tool-result messages count toward the budget like any other.
"""

from __future__ import annotations

from sheetgate.llm.client import ChatMessage
from sheetgate.logging import get_logger
from sheetgate.store.conversations import Conversation, MessageRole

log = get_logger(__name__)

CHARS_PER_TOKEN = 4
_MESSAGE_OVERHEAD_TOKENS = 4

_WIRE_ROLES = {
    MessageRole.USER: "user",
    MessageRole.ASSISTANT: "assistant",
    MessageRole.SYSTEM: "system",
    MessageRole.TOOL: "system",
}


def estimate_tokens(message: ChatMessage) -> int:
    return len(message.content) // CHARS_PER_TOKEN + _MESSAGE_OVERHEAD_TOKENS


def prune(messages: list[ChatMessage], max_tokens: int) -> list[ChatMessage]:
    """Drop the oldest non-system messages until *messages* fit *max_tokens*."""
    if not messages:
        return []
    head = [messages[0]] if messages[0].role == "system" else []
    body = messages[len(head):]
    budget = max_tokens - sum(estimate_tokens(m) for m in head)

    kept: list[ChatMessage] = []
    used = 0
    for index, message in enumerate(reversed(body)):
        cost = estimate_tokens(message)
        # The latest message is always sent, even over budget.
        if index > 0 and used + cost > budget:
            break
        kept.append(message)
        used += cost
    kept.reverse()

    dropped = len(body) - len(kept)
    if dropped:
        log.debug("history_pruned", dropped=dropped, kept=len(kept), max_tokens=max_tokens)
    return head + kept


def build_messages(
    conversation: Conversation,
    *,
    system_prompt: str,
    max_input_tokens: int,
) -> list[ChatMessage]:
    messages = [ChatMessage(role="system", content=system_prompt)]
    messages.extend(
        ChatMessage(role=_WIRE_ROLES[m.role], content=m.content)
        for m in conversation.messages
        if m.content
    )
    return prune(messages, max_input_tokens)
