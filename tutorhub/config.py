"""Pydantic settings loaded from environment variables and .env."""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic import ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)


class Settings(BaseSettings):
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "tutorhub"

    # Empty -> in-process realtime bus and key-value store (single worker only)
    REDIS_URL: str = ""

    # Tokens are issued by the managed auth provider and signed with its project secret
    AUTH_JWT_SECRET: str = "change-me-in-production"
    AUTH_JWT_AUDIENCE: str = "authenticated"
    AUTH_JWT_ALGORITHM: str = "HS256"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_VERSION: str = "2023-10-16"
    PUBLIC_SITE_URL: str = "http://localhost:5173"
    CURRENCY: str = "gbp"
    PLATFORM_FEE_PERCENT: float = 0.10
    BULK_DISCOUNT_THRESHOLD: int = 5
    BULK_DISCOUNT_RATE: float = 0.15
    DEFAULT_HOURLY_RATE: float = 30

    MESSAGE_MAX_LENGTH: int = 1000
    CONVERSATION_BUMP_RETRIES: int = 3

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    model_config = ConfigDict(
        env_file=str(_env_file),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
