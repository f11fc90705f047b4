from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

# Load environment variables from project root .env if present
current_file_path = Path(__file__).resolve()
project_root_depth = 2  # Two levels up from threadstream/core/settings.py to project root

if len(current_file_path.parents) <= project_root_depth:
    project_root = Path.cwd()
else:
    project_root = current_file_path.parents[project_root_depth]

ENV_PATH = project_root / ".env"
load_dotenv(ENV_PATH)

DEFAULT_STREAM_MODES = ["messages-tuple", "values", "modules", "metadata", "custom"]
TRAINING_STREAM_MODES = ["values", "modules", "metadata", "custom"]


class Settings(BaseSettings):
    """Client configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=ENV_PATH,
        extra="ignore",
    )

    # Execution service
    api_base_url: str = Field(default="", alias="API_BASE_URL")
    assistant_id: str = Field(default="agent", alias="ASSISTANT_ID")
    training_assistant_id: str = Field(default="training_module_graph", alias="TRAINING_ASSISTANT_ID")
    live_demo_graph_id: str = Field(default="live_demo_module_graph", alias="LIVE_DEMO_GRAPH_ID")
    cancel_request_timeout_sec: float = Field(default=10.0, alias="CANCEL_REQUEST_TIMEOUT_SEC")

    # Stream modes requested per section
    stream_modes: List[str] = Field(default_factory=lambda: list(DEFAULT_STREAM_MODES), alias="STREAM_MODES")
    training_stream_modes: List[str] = Field(
        default_factory=lambda: list(TRAINING_STREAM_MODES), alias="TRAINING_STREAM_MODES"
    )

    # Session bookkeeping
    thread_transition_ms: int = Field(default=280, alias="THREAD_TRANSITION_MS")
    run_slot_prefix: str = Field(default="lg:stream:", alias="RUN_SLOT_PREFIX")
    run_slot_ttl_sec: int = Field(default=86400, alias="RUN_SLOT_TTL_SEC")
    source_cache_max_threads: int = Field(default=100, alias="SOURCE_CACHE_MAX_THREADS")

    # Logging
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="", alias="LOG_LEVEL")

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        normalized = (value or "").strip()
        return normalized[:-1] if normalized.endswith("/") else normalized

    @field_validator("thread_transition_ms", "run_slot_ttl_sec", "source_cache_max_threads")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    def has_api_base_url(self) -> bool:
        """Return True when the execution service base URL is configured."""
        return bool(self.api_base_url)

    def is_production(self) -> bool:
        return str(self.environment or "").strip().lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Return a singleton instance of the client settings.

    Uses an internal cache to ensure the same Settings instance is returned on each call.
    """
    return Settings()

# Instantiate settings at import time for convenience
settings: Settings = get_settings()
