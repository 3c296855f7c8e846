"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Webhook secrets (empty = signature checks skipped for that provider)
    webhook_secret_gupshup: str = ""
    webhook_secret_meta: str = ""  # Meta app secret, signs X-Hub-Signature-256
    twilio_auth_token: str = ""
    webhook_secret: str = ""  # Shared fallback for generic implementers
    webhook_verify_token: str = ""  # hub.verify_token for GET verification

    # Reject webhooks for providers without a configured secret
    require_webhook_signatures: bool = False

    # Delivery reports
    max_event_age_days: int = 7
    message_lock_ttl_seconds: int = 30
    message_lock_wait_seconds: float = 5.0

    # Orphan reports (no MessageLog yet) are linked for this long after receipt
    orphan_linker_enabled: bool = True
    orphan_link_window_hours: int = 24

    # Reconciliation
    reconciliation_scheduler_enabled: bool = True
    reconciliation_run_hour_utc: int = 2
    reconciliation_duplicate_window_seconds: int = 60
    reconciliation_isolation_level: str = "REPEATABLE READ"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
