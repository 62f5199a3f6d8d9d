"""
Application settings loaded from environment variables.
Uses pydantic-settings for validation and .env file support.
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync engine configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./bema_sync.db",
        description="SQLAlchemy connection string (MySQL or Postgres in production)"
    )

    # Email-marketing platform (MailerLite)
    mailerlite_api_key: str = Field(default="", description="MailerLite API token")
    mailerlite_base_url: str = Field(
        default="https://connect.mailerlite.com/api",
        description="MailerLite REST base URL"
    )

    # Commerce store (Easy Digital Downloads)
    edd_base_url: str = Field(default="", description="EDD REST endpoint, e.g. https://shop.example/edd-api/")
    edd_api_key: str = Field(default="", description="EDD public API key")
    edd_token: str = Field(default="", description="EDD API token")

    http_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")

    # Batch processing
    batch_size: int = Field(default=1000, description="Items per chunk, clamped to [1, 10000]")
    retry_attempts: int = Field(default=3, ge=1, description="Attempts per chunk")
    retry_delay_seconds: int = Field(default=300, ge=1, description="Base chunk backoff delay")
    memory_limit: str = Field(
        default="256M",
        description="Memory ceiling (K/M/G suffix, -1 or 'unlimited' disables it)"
    )
    memory_threshold: float = Field(default=0.8, description="Fraction of memory_limit that aborts a run")
    failure_rate_threshold: float = Field(default=0.2, ge=0, le=1, description="Max failed/processed ratio")

    # Scheduler
    lock_timeout_seconds: int = Field(default=900, ge=1, description="Lock expiry and stale-lock age")
    max_execution_seconds: int = Field(default=3600, ge=1, description="Run time after which a status is stale")
    health_check_interval_seconds: int = Field(default=300, ge=10, description="Health sweep interval")
    max_job_retries: int = Field(default=3, ge=0, description="Retries for failed scheduled runs")
    sync_log_retention: int = Field(default=10, ge=1, description="Sync run records kept")
    scheduler_enabled: bool = Field(default=True, description="Start the background scheduler with the API")

    # Application
    app_name: str = Field(default="Bema CRM Sync", description="Application name")
    debug: bool = Field(default=False, description="Debug mode")
    log_json: bool = Field(default=True, description="Emit JSON log lines")


# Default settings instance, used when the composition root is not given one
settings = Settings()
