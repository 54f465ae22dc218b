"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Subscription Service API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str
    DB_OPERATION_TIMEOUT_SECONDS: float = 10.0

    # Redis (Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # CORS
    CORS_ORIGINS: list[str] = []

    # Public URLs used in gateway redirects and emails
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"

    # Cashfree gateway
    CASHFREE_CLIENT_ID: str = ""
    CASHFREE_CLIENT_SECRET: str = ""
    CASHFREE_WEBHOOK_SECRET: str = ""
    CASHFREE_SANDBOX: bool = True
    CASHFREE_API_VERSION: str = "2023-08-01"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Billing
    BILLING_CURRENCY: str = "INR"
    TRIAL_DURATION_DAYS: int = 14
    ORDER_ID_MAX_ATTEMPTS: int = 5
    ORDER_REUSE_WINDOW_MINUTES: int = 15
    STATE_TRANSITION_MAX_RETRIES: int = 3
    WEBHOOK_TOLERANCE_SECONDS: int = 0  # 0 disables the timestamp window

    # Sweeps (UTC hours)
    SWEEP_HOUR_UTC: int = 9
    USAGE_RESET_HOUR_UTC: int = 0
    PENDING_ORDER_RECHECK_AFTER_MINUTES: int = 30
    PENDING_ORDER_RECHECK_MAX_AGE_DAYS: int = 7

    # Email (for notifications)
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""
    SMTP_TLS: bool = True

    # Observability
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    OTLP_ENDPOINT: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def cashfree_base_url(self) -> str:
        if self.CASHFREE_SANDBOX:
            return "https://sandbox.cashfree.com/pg"
        return "https://api.cashfree.com/pg"

    @property
    def webhook_url(self) -> str:
        return f"{self.BACKEND_URL}{self.API_V1_PREFIX}/payments/webhook"


settings = Settings()
