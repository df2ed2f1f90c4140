"""Pydantic settings loaded from .env and the process environment."""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic import ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# Bootstrap: load .env before Settings reads the environment
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)


class Settings(BaseSettings):
    DEBUG: bool = False

    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'db.sqlite3'}"
    REDIS_URL: str = "redis://localhost:6379/0"

    CORS_ALLOW_ALL_ORIGINS: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    # Auth collaborator: session tokens are JWTs whose ``sub`` is the external user id
    AUTH_JWT_SECRET: str = ""  # unset rejects every token
    AUTH_JWT_ALGORITHMS: list[str] = ["HS256"]
    AUTH_JWT_AUDIENCE: str = ""

    # Daily allowance
    DAILY_TOKEN_CAP: int = 40_000
    ALLOWANCE_WINDOW_HOURS: int = 24
    ALLOWANCE_RETENTION_DAYS: int = 7

    # Cost multipliers
    WEB_SEARCH_MULTIPLIER: float = 1.3

    # Chat dispatch
    DEFAULT_MODEL: str = "openai/gpt-4o"
    MAX_MESSAGE_CHARS: int = 50_000
    CHAT_TEMPERATURE: float = 0.2
    CHAT_MAX_TOKENS: int = 4000
    PROVIDER_TIMEOUT_SECONDS: float = 8.0
    SARVAM_TIMEOUT_SECONDS: float = 10.0

    # Providers
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    KLUSTER_API_KEY: str = ""
    KLUSTER_BASE_URL: str = "https://api.kluster.ai/v1"
    SARVAM_API_KEY: str = ""
    SARVAM_BASE_URL: str = "https://api.sarvam.ai/v1"
    SITE_URL: str = "http://localhost:3000"
    APP_TITLE: str = "Clydra Chat"

    # Response cache
    RESPONSE_CACHE_BACKEND: str = "memory"  # memory | redis | none
    RESPONSE_CACHE_TTL_SECONDS: int = 30

    CLEANUP_INTERVAL_SECONDS: int = 300

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
