# backend/rentaldesk/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/rentaldesk.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///rentaldesk.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Sessions
    SESSION_ABSOLUTE_HOURS = _int_env("SESSION_ABSOLUTE_HOURS", 24)
    SESSION_IDLE_HOURS = _int_env("SESSION_IDLE_HOURS", 2)
    BCRYPT_ROUNDS = _int_env("BCRYPT_ROUNDS", 12)

    # Order lifecycle
    CANCEL_GRACE_MINUTES = _int_env("CANCEL_GRACE_MINUTES", 10)
    RECENT_START_WINDOW_MINUTES = _int_env("RECENT_START_WINDOW_MINUTES", 60)
    EXPIRY_SWEEP_INTERVAL_SECONDS = _int_env("EXPIRY_SWEEP_INTERVAL_SECONDS", 30)

    # Late fee above (subtotal + tax) * multiplier needs explicit confirmation
    LATE_FEE_SANITY_MULTIPLIER = _int_env("LATE_FEE_SANITY_MULTIPLIER", 5)

    INVOICE_PREFIX = os.environ.get("INVOICE_PREFIX", "RNT")
