"""Unit tests — Settings.load, get_settings, override_settings."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from sheetgate.config import Settings, get_settings, override_settings


@pytest.mark.unit
class TestSettingsLoad:
    def test_load_defaults_when_no_files(self) -> None:
        with patch.object(Path, "exists", return_value=False):
            settings = Settings.load()
        assert settings.server.port == 8765
        assert settings.agent.ask_before_apply is True
        assert settings.agent.max_tool_rounds == 5
        assert settings.llm.provider == "openai"
        assert settings.workbook.path is None

    def test_load_from_custom_config_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "agent:\n  max_tool_rounds: 8\n  language: pt-BR\n"
            "store:\n  db_path: ~/books/sg.db\n"
        )

        settings = Settings.load(config_file=config_file)

        assert settings.agent.max_tool_rounds == 8
        assert settings.agent.language == "pt-BR"
        assert settings.agent.ask_before_apply is True
        assert settings.store.db_path == Path("~/books/sg.db").expanduser()

    def test_empty_config_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        assert isinstance(Settings.load(config_file=config_file), Settings)

    def test_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHEETGATE_AGENT__MAX_TOOL_ROUNDS", "7")
        monkeypatch.setenv("SHEETGATE_LLM__PROVIDER", "groq")
        with patch.object(Path, "exists", return_value=False):
            settings = Settings.load()
        assert settings.agent.max_tool_rounds == 7
        assert settings.llm.provider == "groq"

    def test_bounds_enforced(self) -> None:
        with pytest.raises(ValidationError):
            Settings(agent={"max_tool_rounds": 0})
        with pytest.raises(ValidationError):
            Settings(agent={"language": "fr"})


@pytest.mark.unit
class TestGetSettings:
    def test_get_settings_returns_cached_instance(self) -> None:
        import sheetgate.config as cfg_module

        original = cfg_module._settings
        try:
            mock_settings = Settings()
            cfg_module._settings = mock_settings
            assert get_settings() is mock_settings
        finally:
            cfg_module._settings = original

    def test_override_sets_singleton(self) -> None:
        import sheetgate.config as cfg_module

        original = cfg_module._settings
        try:
            custom = Settings(server={"port": 9000})
            override_settings(custom)
            assert get_settings().server.port == 9000
        finally:
            cfg_module._settings = original
