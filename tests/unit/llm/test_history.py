"""Unit tests — History building and pruning."""

from __future__ import annotations

import pytest

from sheetgate.llm.client import ChatMessage
from sheetgate.llm.history import build_messages, estimate_tokens, prune
from sheetgate.store.conversations import Conversation, MessageRole


@pytest.mark.unit
class TestPrune:
    def test_fits_unchanged(self) -> None:
        messages = [ChatMessage("system", "sys"), ChatMessage("user", "hi")]
        assert prune(messages, 1000) == messages

    def test_drops_oldest_first(self) -> None:
        messages = [ChatMessage("system", "s")] + [ChatMessage("user", "x" * 40) for _ in range(5)]
        # system costs 4, each user message 14
        kept = prune(messages, 4 + 14 * 2)
        assert kept[0].role == "system"
        assert len(kept) == 3
        assert kept[1:] == messages[-2:]

    def test_latest_always_kept(self) -> None:
        huge = ChatMessage("user", "y" * 4000)
        kept = prune([ChatMessage("system", "s"), ChatMessage("user", "old"), huge], 10)
        assert kept == [ChatMessage("system", "s"), huge]

    def test_empty(self) -> None:
        assert prune([], 10) == []

    def test_estimate(self) -> None:
        assert estimate_tokens(ChatMessage("user", "abcdefgh")) == 6


@pytest.mark.unit
class TestBuildMessages:
    def test_roles_mapped(self) -> None:
        conversation = Conversation.new()
        conversation.append(MessageRole.USER, "q")
        conversation.append(MessageRole.ASSISTANT, "a")
        conversation.append(MessageRole.TOOL, "TOOL RESULTS:\n- SUCCESS x: y")
        conversation.append(MessageRole.SYSTEM, "note")
        conversation.append(MessageRole.ASSISTANT, "")

        messages = build_messages(conversation, system_prompt="prompt", max_input_tokens=10_000)

        assert [m.role for m in messages] == ["system", "user", "assistant", "system", "system"]
        assert messages[0].content == "prompt"
        assert messages[3].content.startswith("TOOL RESULTS:")
