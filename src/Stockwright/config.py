"""Configuration: defaults, then config.toml, then .env, then the environment."""

from pathlib import Path
from typing import Any, Literal

import tomllib
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_PATH = Path("config.toml")

# Tables in config.toml whose keys become ``<table>_<key>`` fields
_SECTIONS = ("llm", "gate", "clarify", "context", "logging")


def _toml_settings_source() -> dict[str, Any]:
    """Flatten config.toml into field names, e.g. ``[gate] intent_threshold``.

    Unknown keys are dropped by ``extra="ignore"``. ``[logging] to_file`` may
    be a bool or a level name where ``"NONE"`` turns the file handler off.
    """
    if not CONFIG_PATH.exists():
        return {}
    with CONFIG_PATH.open("rb") as f:
        raw = tomllib.load(f)

    values: dict[str, Any] = {}
    if raw.get("database_url"):
        values["database_url"] = raw["database_url"]
    for section in _SECTIONS:
        for key, value in (raw.get(section) or {}).items():
            if value is not None:
                values[f"{section}_{key}"] = value

    to_file = values.get("logging_to_file")
    if isinstance(to_file, str):
        values["logging_to_file"] = to_file.upper() != "NONE"
    return values


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./stockwright.sqlite3")

    # --- LLM Configuration ---
    llm_api_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="'openai' for any OpenAI-compatible /chat/completions API, or 'ollama'.",
    )
    llm_api_url: str = "https://api.x.ai/v1"
    llm_api_key: SecretStr | None = Field(
        default=None, description="Bearer key for OpenAI-compatible services."
    )
    llm_model_name: str = "grok-3-mini"
    llm_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    llm_max_output_tokens: int = Field(default=300, gt=0)
    llm_timeout_ms: int = Field(default=15_000, gt=0)

    # --- Confidence gate ---
    gate_intent_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    gate_extraction_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    # --- Clarification dialogue ---
    clarify_max_turns: int = Field(default=3, ge=1)
    clarify_max_age_seconds: int = Field(default=300, ge=1)

    # --- Conversation context ---
    context_max_messages: int = Field(default=10, ge=1)
    context_ttl_seconds: int = Field(default=1800, ge=1)

    # --- Logging ---
    logging_level: str = "INFO"
    logging_console: Literal["json", "pretty", "none"] = "json"
    logging_to_file: bool = False
    logging_file_path: str = "logs/stockwright.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest): init, OS env, .env, config.toml, secrets dir
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
