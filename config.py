from typing import Literal, Optional

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Database (lockout entries + request logs)
    # =========================
    DATABASE_URL: str = Field(default="sqlite:///./news_api.db")

    # =========================
    # Bearer token gate
    # =========================
    API_BEARER_TOKEN: str = Field(default="")
    MAX_FAILED_ATTEMPTS: int = Field(default=10, ge=1)
    BLOCK_DURATION_MINUTES: int = Field(default=10, ge=1)

    # Client IP resolution (only enable behind a trusted proxy)
    TRUST_X_FORWARDED_FOR: bool = Field(default=False)

    # =========================
    # Lockout backend
    # =========================
    LOCKOUT_BACKEND: Literal["database", "redis"] = Field(default="database")
    REDIS_URL: Optional[str] = Field(default=None)

    # 0 disables the background sweep
    LOCKOUT_SWEEP_INTERVAL_SECONDS: int = Field(default=0, ge=0)

    # =========================
    # Request log
    # =========================
    REQUEST_LOG_MAX_BYTES: int = Field(default=10000, ge=1)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Singleton
settings = Settings()
