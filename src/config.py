"""
Recurring Tasks — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (bot host + push delivery channel)
    TELEGRAM_BOT_TOKEN: str

    # SQLite document store
    DATABASE_PATH: str = "data/tasks.db"

    # Fixed timezone for "today" and the hourly notification triggers
    TIMEZONE: str = "Asia/Tokyo"

    # Generation
    HORIZON_DAYS: int = 14
    GENERATION_SWEEP_MINUTES: int = 60
    MAX_BATCH_OPERATIONS: int = 500

    # /watch polls the task stores this often
    FEED_POLL_SECONDS: int = 30

    # Security — empty list means every registered user may call in
    ALLOWED_USER_IDS: list[str] = []

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, list):
            return [str(uid) for uid in v]
        if isinstance(v, str) and v.strip():
            return [uid.strip() for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "HORIZON_DAYS", "GENERATION_SWEEP_MINUTES", "MAX_BATCH_OPERATIONS", "FEED_POLL_SECONDS",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value <= 0:
            raise ValueError(f"must be positive, got {value}")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/tasks.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Tokyo"),
        HORIZON_DAYS=os.getenv("HORIZON_DAYS", "14"),
        GENERATION_SWEEP_MINUTES=os.getenv("GENERATION_SWEEP_MINUTES", "60"),
        MAX_BATCH_OPERATIONS=os.getenv("MAX_BATCH_OPERATIONS", "500"),
        FEED_POLL_SECONDS=os.getenv("FEED_POLL_SECONDS", "30"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
