"""Unit tests — Status message catalogue and prompt helpers."""

from __future__ import annotations

import pytest

from sheetgate.orchestration.messages import CATALOGS, get_message
from sheetgate.orchestration.prompt import (
    build_system_prompt,
    error_line,
    format_tool_results,
    is_tool_results,
    success_line,
)


@pytest.mark.unit
class TestMessages:
    def test_catalogs_have_same_keys(self) -> None:
        assert set(CATALOGS["en"]) == set(CATALOGS["pt-BR"])

    def test_english(self) -> None:
        assert get_message("actions_applied", count=3) == "Applied 3 action(s)."

    def test_portuguese(self) -> None:
        assert get_message("cancelled", "pt-BR") == "Cancelado."

    def test_unknown_language_falls_back(self) -> None:
        assert get_message("cancelled", "de") == "Cancelled."

    def test_error_messages_share_prefix(self) -> None:
        assert get_message("model_error", reason="x").startswith("Error: ")

    def test_unknown_key(self) -> None:
        with pytest.raises(KeyError):
            get_message("no_such_key")


@pytest.mark.unit
class TestPrompt:
    def test_system_prompt_mentions_workbook_and_language(self) -> None:
        prompt = build_system_prompt(workbook="/data/budget.xlsx", language="pt-BR")
        assert "/data/budget.xlsx" in prompt
        assert "Brazilian Portuguese" in prompt
        assert "Current workbook context" not in prompt

    def test_context_appended(self) -> None:
        prompt = build_system_prompt(workbook="b.xlsx", context="Item | Qty")
        assert prompt.endswith("Current workbook context:\nItem | Qty\n")

    def test_tool_results_block(self) -> None:
        text = format_tool_results([success_line("write_cell", "ok"), error_line("sort_range", "bad")])
        assert is_tool_results(text)
        assert "- SUCCESS write_cell: ok" in text
        assert "- ERROR sort_range: bad" in text
        assert text.endswith("Continue your task based on these results.")
        assert not is_tool_results("hello")
