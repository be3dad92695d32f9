from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App
    app_name: str = "PTW Lifecycle Service"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./ptw.db"

    # Security
    secret_key: str = "dev-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Lifecycle
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3
    extension_auto_apply: bool = True  # supervisor self-service extensions
    reminder_lead_minutes: int = 30

    # Webhooks
    webhook_url: Optional[str] = None
    webhook_timeout: int = 30

    # Logging
    log_level: str = "INFO"
    log_dir: str = "./logs"
    log_to_file: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Allow extra env vars without raising validation errors
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
