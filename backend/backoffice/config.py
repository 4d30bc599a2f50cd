# backend/backoffice/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name) or ""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Internal cron endpoints are disabled (503) until a secret is configured
    CRON_SECRET = os.environ.get("CRON_SECRET")

    SESSION_TTL_HOURS = _env_int("SESSION_TTL_HOURS", 24)

    # Comma-separated browser origins allowed to call the API (none by default)
    CORS_ALLOWED_ORIGINS = _env_list("CORS_ALLOWED_ORIGINS")

    # Idempotency table sweep
    IDEMPOTENCY_RETENTION_DAYS = _env_int("IDEMPOTENCY_RETENTION_DAYS", 14)
    IDEMPOTENCY_STALE_PROCESSING_MINUTES = _env_int("IDEMPOTENCY_STALE_PROCESSING_MINUTES", 15)

    # Dashboard reads only; mutation paths never consult the cache
    READ_CACHE_TTL_SECONDS = _env_int("READ_CACHE_TTL_SECONDS", 15)

    # Accounts payable
    AP_DUE_SOON_DAYS = _env_int("AP_DUE_SOON_DAYS", 7)
    FX_RATE_TOLERANCE_PCT = _env_int("FX_RATE_TOLERANCE_PCT", 25)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CRON_SECRET = "test-cron-secret"
    CORS_ALLOWED_ORIGINS = ("http://localhost:5173",)
    READ_CACHE_TTL_SECONDS = 15
