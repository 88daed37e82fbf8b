"""Settings via pydantic-settings with CODA_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the rest of the
Anthropic tooling uses, so one .env drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CODA_", env_file=".env")

    log_level: str = "info"

    # Provider credentials: unprefixed aliases match the Anthropic SDK env vars
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    temperature: float = 0.0
    system_prompt: str = "You are a helpful coding assistant working in a terminal."
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Memory
    context_window: int = 200_000
    compression_threshold: int = 180_000
    preserve_recent_messages: int = 10
    compression_strategy: Literal["summarize", "truncate"] = "summarize"
    summary_model: str = Field(
        default="claude-sonnet-4-5-20250514",
        validation_alias="CODA_SUMMARY_MODEL",
    )

    # Turn engine
    max_tool_iterations: int = 25  # Max tool-use round trips per turn
    retry_max_attempts: int = 3
    retry_initial_delay: float = 0.5  # seconds
    retry_max_delay: float = 15.0  # seconds
    turn_timeout: float = 120.0  # seconds, end-to-end per turn
    keep_partial_on_cancel: bool = False

    # Tools
    workspace_dir: str = "/tmp/coda-workspace"

    # Notifications
    event_bus_enabled: bool = True

    # Context snapshots
    snapshot_max_size: int = 256 * 1024  # bytes of serialized JSON
    snapshot_include_environment: bool = True

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if self.compression_threshold >= self.context_window:
            raise ValueError(
                f"compression_threshold ({self.compression_threshold}) must be < "
                f"context_window ({self.context_window}) to leave room for the response."
            )
        if self.preserve_recent_messages < 0:
            raise ValueError("preserve_recent_messages must be >= 0")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        return self
