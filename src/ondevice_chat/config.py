"""Runtime configuration loaded from the environment and an optional .env file."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the chat session and its collaborators."""

    # Inference runtime
    engine_base_url: str = Field(default="http://127.0.0.1:11434", description="Local inference runtime URL")
    engine_timeout: float = Field(default=300.0, ge=1.0, description="Engine call timeout in seconds")
    engine_keep_alive: str = Field(default="5m", description="How long a prepared model stays resident")

    # Persistence
    storage_root: str = Field(default=".storage", description="Root directory for persisted conversations")

    # Session behaviour
    default_model_id: Optional[str] = Field(default=None, description="Model the API session starts with")
    use_context_history: bool = Field(default=True, description="Send prior turns with each generation")
    context_keep_latest: int = Field(default=3, ge=0, description="Turns kept when the context overflows")
    summary_max_turns: int = Field(default=5, ge=1, description="Restored turns fed to the summary call")
    update_interval: float = Field(default=0.0, ge=0.0, description="Streaming update coalescing delay")

    # Model catalog
    catalog_url: Optional[str] = Field(default=None, description="Remote model catalog endpoint")

    # Logging / API
    log_level: str = Field(default="INFO", description="Minimum log level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="CORS allow-list")

    model_config = SettingsConfigDict(
        env_prefix="ONDEVICE_CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
