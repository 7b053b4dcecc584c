"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "CHATRELAY_API_KEY", "OPENAI_API_KEY", "backend_api_key"
        ),
    )
    backend_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://openrouter.ai/api/v1"),
        validation_alias=AliasChoices(
            "CHATRELAY_BASE_URL", "OPENAI_BASE_URL", "backend_base_url"
        ),
    )
    default_model: str = Field(
        default="openai/gpt-4o-mini",
        validation_alias=AliasChoices("CHATRELAY_DEFAULT_MODEL", "default_model"),
    )
    system_prompt: Optional[str] = Field(
        default=(
            "You are a helpful assistant working inside the user's workspace. "
            "Call tools when they improve your answer and report tool failures plainly."
        ),
        validation_alias=AliasChoices("CHATRELAY_SYSTEM_PROMPT", "system_prompt"),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("CHATRELAY_BACKEND_TIMEOUT", "request_timeout"),
        ge=1,
    )
    workspace_root: Path = Field(
        default_factory=Path.cwd,
        validation_alias=AliasChoices("CHATRELAY_WORKSPACE", "workspace_root"),
    )
    approval_mode: Literal["default", "yolo"] = Field(
        default="default",
        validation_alias=AliasChoices("CHATRELAY_APPROVAL_MODE", "approval_mode"),
    )
    tool_batch_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias=AliasChoices(
            "CHATRELAY_TOOL_BATCH_TIMEOUT", "tool_batch_timeout_seconds"
        ),
    )
    request_deadline_seconds: float = Field(
        default=300.0,
        gt=0,
        validation_alias=AliasChoices(
            "CHATRELAY_REQUEST_DEADLINE", "request_deadline_seconds"
        ),
    )
    stream_keepalive_seconds: float = Field(
        default=15.0,
        gt=0,
        validation_alias=AliasChoices(
            "CHATRELAY_KEEPALIVE_INTERVAL", "stream_keepalive_seconds"
        ),
    )
    max_rounds: int = Field(
        default=25,
        ge=1,
        validation_alias=AliasChoices("CHATRELAY_MAX_ROUNDS", "max_rounds"),
    )
    shell_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=600,
        validation_alias=AliasChoices("CHATRELAY_SHELL_TIMEOUT", "shell_timeout_seconds"),
    )
    compression_token_threshold: int = Field(
        default=100_000,
        ge=1,
        validation_alias=AliasChoices(
            "CHATRELAY_COMPRESSION_THRESHOLD", "compression_token_threshold"
        ),
    )
    transcript_log_dir: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("CHATRELAY_TRANSCRIPT_DIR", "transcript_log_dir"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
