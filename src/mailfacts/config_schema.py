"""Pydantic configuration schema for mailfacts.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.
Secrets (vault key, OAuth client secret, Anthropic key) come from the
environment, never from this file.

Usage:
    from mailfacts.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class GoogleConfig(BaseModel):
    """Google OAuth client and Gmail API endpoints."""

    client_id: str = Field(description="OAuth 2.0 client ID of the Google Cloud app")
    token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth 2.0 token endpoint used for refresh-token exchange",
    )
    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Gmail API base URL for the authenticated user",
    )

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Google client_id cannot be empty")
        return v.strip()


class SyncConfig(BaseModel):
    """Mailbox sync engine configuration."""

    page_size: int = Field(
        default=500,
        ge=1,
        le=500,
        description="Max IDs requested per history/list call",
    )
    fetch_batch_size: int = Field(
        default=50,
        ge=1,
        le=100,
        description="Messages fetched concurrently per round",
    )
    lookback_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Discovery window when a user has never synced",
    )
    refresh_buffer_minutes: int = Field(
        default=5,
        ge=0,
        le=60,
        description="Refresh the access token when it expires within this window",
    )
    interval_hours: int = Field(
        default=6,
        ge=1,
        le=168,
        description="How often the scheduler syncs every user (hours)",
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Timeout for each Gmail or OAuth HTTP request",
    )


class ExtractionConfig(BaseModel):
    """Fact extraction pipeline configuration."""

    batch_size: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Max messages processed per extraction batch",
    )
    body_char_limit: int = Field(
        default=4000,
        ge=200,
        le=65535,
        description="Body characters sent to the model per message",
    )
    interval_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="How often the scheduler runs an extraction batch (minutes)",
    )
    max_tokens: int = Field(default=1500, ge=100, le=8192)
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)


class QueryConfig(BaseModel):
    """Natural-language query configuration."""

    min_confidence: float = Field(
        default=0.4,
        ge=0.0,
        lt=1.0,
        description="Facts must score strictly above this to be returned",
    )
    max_question_length: int = Field(default=500, ge=10, le=5000)
    answer_sample_size: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Rows shown to the answer model",
    )
    currency_symbol: str = Field(
        default="₹",
        description="Currency symbol the answer should use for amounts",
    )


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    extraction: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for per-message fact extraction",
    )
    intent: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for question-to-intent parsing",
    )
    answer: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for answer composition",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to keep message text out of the log)",
    )
    log_responses: bool = Field(default=True, description="Store full responses")


class AppConfig(BaseModel):
    """Root configuration schema for mailfacts.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    google: GoogleConfig
    timezone: str = Field(default="UTC", description="IANA timezone for CLI display")
    database_path: str = Field(
        default="data/mailfacts.db",
        description="SQLite database file",
    )
    sync: SyncConfig = Field(default_factory=SyncConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(
                f"Unknown timezone '{v}' (use an IANA name such as 'Asia/Kolkata')"
            ) from e
        return v

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v
