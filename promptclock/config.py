"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTIONS = (
    "You are a helpful personal assistant. Answer concisely. "
    "Use the available tools to look up information and to manage the user's "
    "scheduled prompts and settings."
)


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: str = Field(..., alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o", alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    database_path: Path = Field(default=Path("promptclock.db"), alias="DATABASE_PATH")
    signal_cli_path: str = Field(default="signal-cli", alias="SIGNAL_CLI_PATH")
    signal_account: str = Field(..., alias="SIGNAL_ACCOUNT")
    # Comma-separated E.164 numbers allowed to talk to the bot (empty allows everyone).
    signal_allowed_senders: str = Field(default="", alias="SIGNAL_ALLOWED_SENDERS")
    signal_poll_interval_seconds: float = Field(default=2.0, alias="SIGNAL_POLL_INTERVAL_SECONDS")
    default_system_instructions: str = Field(default=DEFAULT_INSTRUCTIONS, alias="DEFAULT_SYSTEM_INSTRUCTIONS")
    default_timezone: str = Field(default="UTC", alias="DEFAULT_TIMEZONE")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")
    tool_timeout_seconds: float = Field(default=30.0, alias="TOOL_TIMEOUT_SECONDS")
    max_tool_rounds: int = Field(default=8, ge=1, alias="MAX_TOOL_ROUNDS")
    presence_interval_seconds: float = Field(default=5.0, alias="PRESENCE_INTERVAL_SECONDS")
    weather_api_key: str = Field(default="", alias="WEATHER_API_KEY")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def allowed_senders(settings: Settings) -> frozenset[str]:
    """Return the set of E.164 numbers permitted to talk to the bot.

    An empty set means the allow list is disabled.
    """
    return frozenset(n.strip() for n in settings.signal_allowed_senders.split(",") if n.strip())
