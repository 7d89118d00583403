"""Application settings and configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "referral-commissions"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"

    # Stripe
    stripe_webhook_secret: str | None = None
    stripe_signature_tolerance_seconds: int = 300

    # Commissions
    default_commission_rate: float = 0.6

    # Processing limits
    webhook_timeout_seconds: float = 20.0
    transaction_max_attempts: int = 5
    attribution_lookup_limit: int = 5
    max_processed_event_ids: int = 100


# Global settings instance
settings = Settings()
