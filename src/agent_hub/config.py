"""Application configuration using environment variables."""

from datetime import timedelta
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

    openai_api_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "base_url"),
    )
    default_model: str = Field(
        default="gpt-5-mini",
        validation_alias=AliasChoices("OPENAI_DEFAULT_MODEL", "default_model"),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("OPENAI_TIMEOUT", "timeout"),
        ge=1,
    )
    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/chat_sessions.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )
    agents_path: Path = Field(
        default_factory=lambda: Path("data/agents.json"),
        validation_alias=AliasChoices("AGENTS_PATH", "agents_path"),
    )

    # Turn budget. The platform kills the function at the ceiling, so the
    # controller stops a little earlier to persist partial output.
    function_max_duration_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias=AliasChoices(
            "FUNCTION_MAX_DURATION_SECONDS", "function_max_duration_seconds"
        ),
    )
    deadline_margin_seconds: float = Field(
        default=5.0,
        ge=0,
        validation_alias=AliasChoices(
            "DEADLINE_MARGIN_SECONDS", "deadline_margin_seconds"
        ),
    )
    heartbeat_interval_seconds: float = Field(
        default=15.0,
        gt=0,
        validation_alias=AliasChoices(
            "HEARTBEAT_INTERVAL_SECONDS", "heartbeat_interval_seconds"
        ),
    )

    tool_iteration_limit: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("TOOL_ITERATION_LIMIT", "tool_iteration_limit"),
    )
    tool_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices("TOOL_TIMEOUT_SECONDS", "tool_timeout_seconds"),
    )
    mcp_server_urls: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("MCP_SERVER_URLS", "mcp_server_urls"),
    )

    history_limit: int = Field(
        default=10,
        ge=0,
        validation_alias=AliasChoices("CHAT_HISTORY_LIMIT", "history_limit"),
    )
    default_reasoning_effort: Literal["minimal", "low", "medium", "high"] = Field(
        default="low",
        validation_alias=AliasChoices(
            "DEFAULT_REASONING_EFFORT", "default_reasoning_effort"
        ),
    )
    # "bump" raises effort until it supports the requested tools,
    # "reject" refuses the request instead.
    effort_policy: Literal["bump", "reject"] = Field(
        default="bump",
        validation_alias=AliasChoices("EFFORT_POLICY", "effort_policy"),
    )

    retrieval_url: Optional[AnyHttpUrl] = Field(
        default=None,
        validation_alias=AliasChoices("RETRIEVAL_URL", "retrieval_url"),
    )
    retrieval_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("RETRIEVAL_API_KEY", "retrieval_api_key"),
    )
    retrieval_top_k: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("RETRIEVAL_TOP_K", "retrieval_top_k"),
    )
    retrieval_threshold: float = Field(
        default=0.5,
        ge=0,
        le=1,
        validation_alias=AliasChoices("RETRIEVAL_THRESHOLD", "retrieval_threshold"),
    )
    retrieval_timeout_seconds: float = Field(
        default=8.0,
        gt=0,
        validation_alias=AliasChoices(
            "RETRIEVAL_TIMEOUT_SECONDS", "retrieval_timeout_seconds"
        ),
    )

    image_models: list[str] = Field(
        default_factory=lambda: ["gpt-image-1", "dall-e-3", "dall-e-2"],
        validation_alias=AliasChoices("IMAGE_MODELS", "image_models"),
    )
    image_partial_frames: int = Field(
        default=2,
        ge=0,
        le=3,
        validation_alias=AliasChoices("IMAGE_PARTIAL_FRAMES", "image_partial_frames"),
    )
    image_url_ttl_hours: int = Field(
        default=24,
        ge=1,
        validation_alias=AliasChoices("IMAGE_URL_TTL_HOURS", "image_url_ttl_hours"),
    )

    gcs_bucket_name: str = Field(
        default="agent-hub-assets",
        validation_alias=AliasChoices("GCS_BUCKET_NAME", "gcs_bucket_name"),
    )
    gcp_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "gcp_project_id"),
    )
    google_application_credentials: Path = Field(
        default_factory=lambda: Path("credentials/googlecloud/sa.json"),
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS",
            "google_application_credentials",
        ),
    )

    @property
    def turn_deadline_seconds(self) -> float:
        return max(
            1.0, self.function_max_duration_seconds - self.deadline_margin_seconds
        )

    @property
    def image_url_ttl(self) -> timedelta:
        return timedelta(hours=self.image_url_ttl_hours)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()  # type: ignore[call-arg]


__all__ = ["Settings", "get_settings", "PROJECT_ROOT"]
