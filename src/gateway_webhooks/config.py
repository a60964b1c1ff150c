from pydantic_settings import BaseSettings, SettingsConfigDict

PLACEHOLDER_WEBHOOK_SECRET = "whsec_test_webhook_secret_replace_in_production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    webhook_secret: str = ""
    webhook_retry_attempts: int = 3
    webhook_retry_delay_seconds: int = 5
    signature_tolerance_seconds: int = 300
    processing_timeout_seconds: float | None = 60.0
    db_path: str = "/data/billing.db"
    retention_days: int = 30
    cleanup_interval_hours: int = 1
    stuck_processing_minutes: int = 15
    log_level: str = "INFO"
    log_format: str = "pretty"
