from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).strip().lower() in ("true", "1", "yes", "on")


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_list(key: str) -> list[str]:
    return [x.strip() for x in os.getenv(key, "").split(",") if x.strip()]


def _default_db_path() -> Path:
    override = os.getenv("DEALMATCH_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).parent / "data" / "dealmatch.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_default_db_path)
    base_url: str = Field(default_factory=lambda: os.getenv("APP_BASE_URL", "https://tcredex-frontend.vercel.app"))

    email_from: str = Field(default_factory=lambda: os.getenv(
        "EMAIL_FROM", "tCredex.com | AI-Powered Tax Credit Marketplace <noreply@tcredex.com>",
    ))
    resend_api_key: str = Field(default_factory=lambda: os.getenv("RESEND_API_KEY", ""))
    resend_api_url: str = "https://api.resend.com/emails"
    disable_emails: bool = Field(default_factory=lambda: _env_bool("DISABLE_EMAILS"))
    email_timeout_seconds: float = 15.0

    # Organizations matched by name substring are never offered for outreach
    blacklisted_orgs: list[str] = Field(default_factory=lambda: _env_list("OUTREACH_BLACKLIST"))
    max_active_requests: int = Field(default_factory=lambda: _env_int("OUTREACH_MAX_ACTIVE", 3))
    request_expiry_days: int = Field(default_factory=lambda: _env_int("OUTREACH_EXPIRY_DAYS", 7))

    delivery_concurrency: int = Field(default_factory=lambda: _env_int("DELIVERY_CONCURRENCY", 4))
    delivery_timeout_seconds: float = Field(default_factory=lambda: _env_float("DELIVERY_TIMEOUT_SECONDS", 120.0))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
