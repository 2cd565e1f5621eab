from pydantic_settings import BaseSettings
from pydantic import field_validator
from decimal import Decimal
from functools import lru_cache
import re


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # PostgreSQL pool, ignored for sqlite
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30  # seconds
    DB_POOL_RECYCLE: int = 1800  # seconds

    # App Settings
    APP_NAME: str = "Growthdesk Engines"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # falls back to SMTP_USER
    SMTP_FROM_NAME: str = "Growthdesk"
    SMTP_TIMEOUT_SECONDS: int = 10

    # Affiliate Program Defaults (used when a plan leaves a value unset)
    DEFAULT_COOKIE_DURATION_DAYS: int = 30
    DEFAULT_MINIMUM_PAYOUT: Decimal = Decimal("50.00")
    MAX_COMMISSION_TIERS: int = 3  # Can lower the cap, never raise it above 3

    # Background Jobs
    SCHEDULER_TIMEZONE: str = "UTC"
    SEQUENCE_PROCESS_INTERVAL_MINUTES: int = 5
    SEQUENCE_BATCH_SIZE: int = 100
    BALANCE_RECONCILE_INTERVAL_HOURS: int = 24
    AUTO_PAYOUT_ENABLED: bool = False
    AUTO_PAYOUT_INTERVAL_HOURS: int = 24
    AUTO_PAYOUT_METHOD: str = "MANUAL"
    AUTO_PAYOUT_MINIMUM_BALANCE: Decimal = Decimal("0")
    JOB_MAX_CONCURRENT_TENANTS: int = 5

    @field_validator('MAX_COMMISSION_TIERS')
    @classmethod
    def cap_commission_tiers(cls, v):
        if v < 1:
            raise ValueError("MAX_COMMISSION_TIERS must be at least 1")
        return min(v, 3)

    @field_validator('AUTO_PAYOUT_METHOD', 'LOG_LEVEL')
    @classmethod
    def uppercase_names(cls, v):
        return v.strip().upper()

    @field_validator('SMTP_FROM_EMAIL')
    @classmethod
    def validate_from_email(cls, v):
        if v and not re.match(r"^[^@\s]+@[^@\s]+$", v):
            raise ValueError(f"Invalid SMTP_FROM_EMAIL: {v}")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
