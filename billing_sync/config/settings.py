"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_SEVERITIES = ["low", "medium", "high", "critical"]
VALID_CHANNELS = ["database", "log", "webhook", "email"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed webhook timestamp (seconds)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./billing_sync.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (distributed idempotency ledger)
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL; in-memory ledger is used when unset"
    )

    # Retry profiles
    retry_max_attempts: int = Field(default=3, description="Default profile max retries")
    retry_base_delay: float = Field(default=1.0, description="Default profile base delay (s)")
    retry_max_delay: float = Field(default=30.0, description="Default profile max delay (s)")
    retry_backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    retry_jitter: bool = Field(default=True, description="Apply jitter to backoff delays")
    rate_limit_retry_max_attempts: int = Field(default=5, description="Rate-limit profile retries")
    rate_limit_retry_base_delay: float = Field(default=2.0, description="Rate-limit base delay (s)")
    rate_limit_retry_max_delay: float = Field(default=60.0, description="Rate-limit max delay (s)")

    # Circuit breaker / outbound calls
    circuit_failure_threshold: int = Field(default=5, description="Failures before opening")
    circuit_reset_timeout: float = Field(
        default=60.0, description="Seconds before an open circuit admits a probe"
    )
    outbound_call_timeout_seconds: float = Field(
        default=20.0, description="Timeout for a single outbound attempt"
    )
    outbound_max_concurrency: int = Field(
        default=0, description="Concurrent outbound calls per integration (0 = unbounded)"
    )

    # Idempotency ledger
    ledger_retention_seconds: int = Field(
        default=86400 * 7, description="How long processed event ids are remembered"
    )
    ledger_prune_interval_seconds: int = Field(
        default=3600, description="Interval between ledger eviction passes"
    )

    # Escalation
    escalation_min_severity: str = Field(default="high", description="Lowest severity delivered")
    escalation_rate_limit_minutes: float = Field(
        default=5.0, description="Suppression window for repeated alerts"
    )
    escalation_channels: str = Field(
        default="database,log", description="Notification channels (comma-separated)"
    )
    escalation_webhook_url: Optional[str] = Field(default=None, description="Alert webhook URL")
    escalation_email_api_url: Optional[str] = Field(
        default=None, description="HTTP email API endpoint for alert mails"
    )
    escalation_email_api_key: Optional[str] = Field(default=None, description="Email API key")
    escalation_email_sender: str = Field(
        default="alerts@example.com", description="From address for alert mails"
    )
    escalation_email_recipients: str = Field(
        default="", description="Alert mail recipients (comma-separated)"
    )

    # Application Configuration
    app_name: str = Field(default="billing-sync", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("escalation_min_severity")
    @classmethod
    def validate_min_severity(cls, v: str) -> str:
        """Validate the minimum escalation severity."""
        if v.lower() not in VALID_SEVERITIES:
            raise ValueError(f"Invalid severity. Must be one of: {VALID_SEVERITIES}")
        return v.lower()

    @field_validator("escalation_channels")
    @classmethod
    def validate_channels(cls, v: str) -> str:
        """Validate configured notification channels."""
        for channel in _split_csv(v):
            if channel not in VALID_CHANNELS:
                raise ValueError(f"Invalid channel '{channel}'. Must be one of: {VALID_CHANNELS}")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return _split_csv(self.allowed_origins)

    def get_escalation_channels_list(self) -> List[str]:
        """Parse escalation channels from comma-separated string."""
        return _split_csv(self.escalation_channels)

    def get_email_recipients_list(self) -> List[str]:
        """Parse alert mail recipients from comma-separated string."""
        return _split_csv(self.escalation_email_recipients)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
