"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Webtoon Studio API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Public URL of the web app (billing redirects land here)
    APP_URL: str = "http://localhost:3000"

    # Database - REQUIRED
    DATABASE_URL: str

    # Redis (Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Hosted auth provider - REQUIRED (no defaults for sensitive values)
    AUTH_JWT_SECRET: str
    AUTH_JWT_AUDIENCE: Optional[str] = "authenticated"
    AUTH_JWT_ALGORITHM: str = "HS256"

    # Shared secret for the cron trigger - REQUIRED
    CRON_SECRET: str

    # Toss Payments billing
    TOSS_SECRET_KEY: str = ""
    TOSS_CLIENT_KEY: str = ""
    TOSS_API_BASE_URL: str = "https://api.tosspayments.com/v1"
    # HMAC-SHA256 key for the toss-signature webhook header; webhooks are refused when empty
    TOSS_WEBHOOK_SECRET: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Recurring billing
    BILLING_MAX_FAILED_ATTEMPTS: int = 3
    BILLING_FAILURE_WINDOW_DAYS: int = 30
    BILLING_RUN_HOUR_UTC: int = 0
    BILLING_RUN_MINUTE_UTC: int = 10
    BILLING_BATCH_TIME_LIMIT_SECONDS: int = 3600

    # CORS
    CORS_ORIGINS: list[str] = []

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
