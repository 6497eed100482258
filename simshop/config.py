from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./simshop.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "SIM Profile Storefront"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]

    # Storefront URL (used in notification links)
    WEB_URL: str = "http://localhost:3000"

    # Admin bootstrap list, comma-separated (merged with the admin_settings row)
    ADMIN_EMAILS: str = ""

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # Sender email (defaults to SMTP_USER)
    SMTP_FROM_NAME: str = "SIM Profile Storefront"

    # Redis Cache Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    SETTINGS_CACHE_TTL: int = 60  # Admin settings staleness bound (seconds)
    FX_RATE_CACHE_TTL: int = 3600  # 1 hour for FX rates

    # Razorpay Payment Gateway
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None  # For webhook verification
    GATEWAY_MINIMUM_USD_CENTS: int = 50  # Smallest chargeable amount, reference currency

    # Provisioning provider
    PROVIDER_API_URL: str = "https://api.esimaccess.com/api/v1/open"
    PROVIDER_ACCESS_CODE: str = ""
    PROVIDER_SECRET_KEY: str = ""
    PROVIDER_HTTP_TIMEOUT: float = 30.0  # Seconds per provider request
    PROVIDER_TRANSACTION_ID_MAX_LENGTH: int = 50

    # Provisioning poll loop
    PROVISION_POLL_ATTEMPTS: int = 10
    PROVISION_POLL_DELAY_SECONDS: float = 3.0
    SWEEP_POLL_ATTEMPTS: int = 5

    # Retry sweep
    SCHEDULER_ENABLED: bool = True
    RETRY_SWEEP_INTERVAL_MINUTES: int = 5
    RETRY_SWEEP_BATCH_SIZE: int = 10
    RECEIPT_SWEEP_BATCH_SIZE: int = 50
    STALE_PAID_MINUTES: int = 10  # Paid orders idle this long are re-driven by the sweep

    # Profile sync
    PROFILE_SYNC_INTERVAL_MINUTES: int = 60
    USAGE_QUERY_BATCH_SIZE: int = 50

    # Affiliate program
    COMMISSION_PERCENT: int = 10  # Percent of reference-currency amount

    # Guest checkout
    GUEST_EMAIL_DOMAIN: str = "guest.simshop.invalid"

    # FX rate source
    FX_API_URL: str = "https://open.er-api.com/v6/latest/USD"
    FX_HTTP_TIMEOUT: float = 10.0

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def admin_emails_list(self) -> list[str]:
        return [e.strip().lower() for e in self.ADMIN_EMAILS.split(',') if e.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
