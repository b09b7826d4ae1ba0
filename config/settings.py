"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import Dict, List, Literal, Optional
from zoneinfo import ZoneInfo

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Resource Booking Scheduler"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    BOOKING_LOCK_TTL_SECONDS: int = 30
    BOOKING_LOCK_WAIT_SECONDS: float = 5.0

    # ── JWT (tokens are issued by the identity service) ──────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@scheduler.example.com"
    EMAIL_FROM_NAME: str = "Scheduler"

    # ── Delivery resilience ──────────────────────────────────
    SENDER_BREAKER_FAIL_MAX: int = 5
    SENDER_BREAKER_RESET_SECONDS: int = 60

    # ── Frontend ─────────────────────────────────────────────
    APP_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Business Config ──────────────────────────────────────
    BUSINESS_TIMEZONE: str = "Asia/Tokyo"
    DAILY_BOOKING_CAP: int = 10
    CAPACITY_SCOPE: Literal["global", "resource"] = "global"
    DAILY_CAP_BY_RESOURCE_KIND: Dict[str, int] = {}
    RECURRENCE_HORIZON_DAYS: int = 730
    RECURRENCE_MAX_OCCURRENCES: int = 366
    DEFAULT_REMINDER_OFFSET_MINUTES: int = 15
    NOTIFY_ON_BOOKING_CHANGES: bool = True

    # ── Reminder Dispatch ────────────────────────────────────
    DISPATCH_INTERVAL_SECONDS: int = 30
    DISPATCH_BATCH_SIZE: int = 100
    CLAIM_TIMEOUT_SECONDS: int = 600
    WORKER_NAME: Optional[str] = None

    @field_validator("BUSINESS_TIMEZONE")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        ZoneInfo(v)  # raises for unknown zone names
        return v

    @field_validator("DAILY_BOOKING_CAP", "DISPATCH_BATCH_SIZE", "RECURRENCE_MAX_OCCURRENCES")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def business_tz(self) -> ZoneInfo:
        return ZoneInfo(self.BUSINESS_TIMEZONE)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, shared by every module."""
    return Settings()


settings = get_settings()
