"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Social Referral Rewards API"
    api_version: str = "0.1.0"
    api_description: str = "Verifies social posts and awards earned premium access"

    # Security - shared API key checked on every referral route when set
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "social-referral-api"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    billing_currency: str = "usd"

    # Content verification - Apify actors, one per platform
    apify_api_token: str = ""
    apify_base_url: str = "https://api.apify.com/v2"
    apify_timeout_seconds: float = 120.0
    apify_x_actor_id: str = "CJdippxWmn9uRfooo"
    apify_linkedin_actor_id: str = "Wpp1BZ6yGWjySadk3"
    apify_threads_actor_id: str = "7xFgGDhba8W5ZvOke"
    apify_facebook_actor_id: str = "KoJrdxJCTtpon81KY"

    # Reward Policy
    referral_keyword_token: str = "engagekit_io"
    likes_threshold: int = 10  # +1 day at or above
    comments_threshold: int = 5  # +1 day at or above
    max_days_per_post: int = 3
    monthly_cap_days: int = 14
    credit_per_day_cents: int = 100  # $1.00/day billing credit for paid orgs
    caption_similarity_threshold: float = 0.95
    caption_lookback_days: int = 7
    reward_timezone: str = "UTC"  # Calendar month boundary for the monthly cap

    # Rescan Workflow
    rescan_delay_seconds: int = 24 * 60 * 60
    workflow_scheduler_enabled: bool = True
    workflow_poll_interval_seconds: float = 30.0
    workflow_batch_size: int = 20
    workflow_concurrency: int = 5  # Steps executed in parallel per tick
    workflow_max_attempts: int = 5
    workflow_retry_backoff_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        # Reward arithmetic only makes sense with positive limits
        for name in (
            "likes_threshold",
            "comments_threshold",
            "max_days_per_post",
            "monthly_cap_days",
            "credit_per_day_cents",
            "workflow_batch_size",
            "workflow_concurrency",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive, got {getattr(self, name)}")

        if not 0.0 < self.caption_similarity_threshold <= 1.0:
            errors.append(
                "CAPTION_SIMILARITY_THRESHOLD must be within (0, 1], "
                f"got {self.caption_similarity_threshold}"
            )

        if self.rescan_delay_seconds < 0:
            errors.append(f"RESCAN_DELAY_SECONDS cannot be negative: {self.rescan_delay_seconds}")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
