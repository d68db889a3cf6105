"""sheetgate — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. User config:    ~/.sheetgate/config.yaml
    3. Project config: ./.sheetgate/config.yaml
    4. Explicit file passed to ``Settings.load()``
    5. Environment variables prefixed with SHEETGATE_ (nested with ``__``)

Call ``Settings.load()`` once at startup and pass the instance down; the
server keeps it on ``app.state`` and the CLI passes it to ``AgentSession``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1024, le=65535)
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost", "http://127.0.0.1"],
        description="Origins allowed to call the API from a browser UI.",
    )
    api_token: str | None = Field(
        default=None,
        description="If set, every request must carry 'X-Sheetgate-Token: <token>'.",
    )


class AgentConfig(BaseModel):
    ask_before_apply: bool = Field(
        default=True,
        description=(
            "Hold mutating tool calls behind the approval gate. When False the "
            "turn loop applies them immediately and keeps looping."
        ),
    )
    max_tool_rounds: Annotated[int, Field(ge=1, le=100)] = Field(
        default=5,
        description="Maximum tool-executing model rounds per turn before truncation.",
    )
    round_delay_seconds: Annotated[float, Field(ge=0.0, le=30.0)] = Field(
        default=0.0,
        description="Pause between model rounds, to stay under provider rate limits.",
    )
    language: Literal["en", "pt-BR"] = Field(
        default="en",
        description="Language of status messages and of the assistant's replies.",
    )


class LLMConfig(BaseModel):
    provider: Literal["openai", "openrouter", "groq", "custom", "null"] = "openai"
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    base_url: str | None = Field(
        default=None,
        description="Override the provider's default base URL (required for 'custom').",
    )
    timeout: Annotated[float, Field(ge=1.0, le=600.0)] = 60.0
    max_retries: Annotated[int, Field(ge=0, le=10)] = 3
    max_input_tokens: Annotated[int, Field(ge=500, le=2_000_000)] = Field(
        default=8000,
        description="History is pruned to fit this budget (estimated at 4 chars/token).",
    )
    temperature: Annotated[float, Field(ge=0.0, le=2.0)] = 0.2


class StoreConfig(BaseModel):
    db_path: Path = Path("~/.sheetgate/sheetgate.db")


class WorkbookConfig(BaseModel):
    path: Path | None = Field(
        default=None,
        description="Workbook opened at startup by the server.",
    )
    max_rows_context: Annotated[int, Field(ge=1, le=10_000)] = 50
    max_context_chars: Annotated[int, Field(ge=200, le=1_000_000)] = 6000
    include_headers: bool = True
    autosave: bool = Field(
        default=True,
        description="Write the workbook to disk after every mutation and undo.",
    )


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None
    audit_file: Path | None = Path("~/.sheetgate/audit.ndjson")


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHEETGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    workbook: WorkbookConfig = Field(default_factory=WorkbookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("store", mode="before")
    @classmethod
    def expand_store_paths(cls, v: object) -> object:
        if isinstance(v, dict) and isinstance(v.get("db_path"), str):
            v["db_path"] = Path(v["db_path"]).expanduser()
        return v

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from YAML files + environment variables."""
        data: dict[str, object] = {}

        candidates = [
            Path.home() / ".sheetgate" / "config.yaml",
            Path.cwd() / ".sheetgate" / "config.yaml",
        ]
        if config_file:
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                import yaml

                with path.open() as f:
                    loaded = yaml.safe_load(f) or {}
                    for section, values in loaded.items():
                        if isinstance(values, dict) and isinstance(data.get(section), dict):
                            data[section] = {**data[section], **values}  # type: ignore[dict-item]
                        else:
                            data[section] = values

        return cls(**data)


# Module-level singleton, replaced by ``Settings.load()`` at startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings) -> None:
    """Replace the module-level singleton. Used in tests."""
    global _settings
    _settings = settings
