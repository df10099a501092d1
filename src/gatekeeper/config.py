"""Configuration management for Gatekeeper.

Settings are read once at process start (see :mod:`gatekeeper.main`) and
handed to each component through its constructor.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Bounds shared by settings validation on write and on read.
MIN_MESSAGE_THRESHOLD = 1
MAX_MESSAGE_THRESHOLD = 100
MIN_TIME_WINDOW_MS = 1_000
MAX_TIME_WINDOW_MS = 600_000
MAX_SUSPICIOUS_KEYWORDS = 200

DEFAULT_SUSPICIOUS_KEYWORDS: tuple[str, ...] = (
    "nitro scam",
    "free discord nitro",
    "free nitro",
    "discord nitro",
    "steam gift",
    "gift card",
    "click this link",
    "claim your prize",
    "crypto giveaway",
    "airdrop",
    "free robux",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="gatekeeper", description="Prefix for log file names")
    log_message_content: bool = Field(
        default=True, description="Include message previews in forensic detection logs"
    )

    # Heuristic defaults (used when a tenant has no valid override)
    default_message_threshold: int = Field(
        default=5, description="Messages allowed inside the window before flagging"
    )
    default_message_timeframe_seconds: int = Field(
        default=10, description="Sliding window length in seconds"
    )
    default_suspicious_keywords_str: str | None = Field(
        default=None,
        alias="DEFAULT_SUSPICIOUS_KEYWORDS",
        description="Comma-separated keyword list overriding the built-in defaults",
    )
    rate_window_sweep_interval_seconds: float = Field(
        default=60.0, description="Minimum seconds between stale rate-window sweeps"
    )

    # Classifier (escalation policy)
    classifier_enabled: bool = Field(default=True, description="Allow external classification")
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="Model used for classification")
    classifier_timeout_seconds: float = Field(
        default=15.0, description="Upper bound on a single classifier call"
    )
    classifier_lookback_hours: float = Field(
        default=24.0, description="How far back to look for a prior high-confidence detection"
    )
    high_confidence_threshold: float = Field(
        default=0.8, description="Confidence at which a prior detection skips classification"
    )

    # Storage
    postgres_dsn: str | None = Field(
        default=None, description="PostgreSQL connection string (in-memory storage if unset)"
    )

    # Discord
    discord_token: SecretStr | None = Field(default=None, description="Discord bot token")
    restricted_role_name: str = Field(
        default="Restricted", description="Role applied to users pending verification"
    )
    verification_channel_name: str = Field(
        default="verification", description="Channel that hosts verification threads"
    )
    admin_channel_id: int | None = Field(
        default=None, description="Channel receiving case notifications"
    )
    allow_bot_messages: bool = Field(
        default=False, description="Run detection on messages from other bots"
    )

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"

    @property
    def default_time_window_ms(self) -> int:
        """Default sliding window in milliseconds."""
        return self.default_message_timeframe_seconds * 1000

    @property
    def default_suspicious_keywords(self) -> list[str]:
        """Parse and return the default keyword list."""
        if self.default_suspicious_keywords_str is None:
            return list(DEFAULT_SUSPICIOUS_KEYWORDS)
        return [kw.strip() for kw in self.default_suspicious_keywords_str.split(",") if kw.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @field_validator("high_confidence_threshold")
    @classmethod
    def validate_float_0_1(cls, v: float) -> float:
        """Validate float values are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got: {v}")
        return v

    @field_validator(
        "classifier_timeout_seconds",
        "classifier_lookback_hours",
        "rate_window_sweep_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are strictly positive."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_heuristic_defaults(self) -> Settings:
        """Global heuristic defaults must satisfy the per-tenant bounds."""
        if not MIN_MESSAGE_THRESHOLD <= self.default_message_threshold <= MAX_MESSAGE_THRESHOLD:
            raise ValueError(
                f"default_message_threshold must be between {MIN_MESSAGE_THRESHOLD} "
                f"and {MAX_MESSAGE_THRESHOLD}, got: {self.default_message_threshold}"
            )
        if not MIN_TIME_WINDOW_MS <= self.default_time_window_ms <= MAX_TIME_WINDOW_MS:
            raise ValueError(
                "default_message_timeframe_seconds must be between "
                f"{MIN_TIME_WINDOW_MS // 1000} and {MAX_TIME_WINDOW_MS // 1000}, "
                f"got: {self.default_message_timeframe_seconds}"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
