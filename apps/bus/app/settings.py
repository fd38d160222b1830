from __future__ import annotations

import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_flag(key: str, default: bool = False) -> bool:
    raw = (os.getenv(key) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


ENV_LOWER = _env_or("ENV", "dev").lower()

DB_URL = _env_or("BUS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/bus.db"))
# sql | file | auto (probe the database once at startup, fall back to the file)
STORAGE_MODE = _env_or("BUS_STORAGE", "auto").strip().lower()
DATA_FILE = _env_or("BUS_DATA_FILE", "/tmp/bus-data.json")

# Departure times and "today" are evaluated in this zone, never in the
# host default zone.
OPERATING_TZ = _env_or("BUS_TIMEZONE", "Asia/Colombo")

JWT_SECRET = _env_or("JWT_SECRET", "change-me-bus-jwt")
JWT_EXPIRES_DAYS = int(_env_or("JWT_EXPIRES_DAYS", "7"))
BCRYPT_ROUNDS = int(_env_or("BCRYPT_ROUNDS", "12"))

RAZORPAY_KEY_SECRET = _env_or("RAZORPAY_KEY_SECRET", "")

PAYHERE_MERCHANT_ID = _env_or("PAYHERE_MERCHANT_ID", "")
PAYHERE_MERCHANT_SECRET = _env_or("PAYHERE_MERCHANT_SECRET", "")
PAYHERE_CHECKOUT_URL = _env_or("PAYHERE_CHECKOUT_URL", "https://sandbox.payhere.lk/pay/checkout")
PAYHERE_CURRENCY = _env_or("PAYHERE_CURRENCY", "LKR")
PAYHERE_TIMEOUT_SECS = float(_env_or("PAYHERE_TIMEOUT_SECS", "15"))

FRONTEND_URL = _env_or("FRONTEND_URL", "http://localhost:3000")
BACKEND_URL = _env_or("BACKEND_URL", "http://localhost:5000")

ADMIN_EMAIL = _env_or("ADMIN_EMAIL", "admin@busticket.com")
ADMIN_PASSWORD = _env_or("ADMIN_PASSWORD", "Admin@123")

ENABLE_DOCS = ENV_LOWER in ("dev", "test") or _env_flag("ENABLE_API_DOCS_IN_PROD")


def is_prod_env() -> bool:
    env = (os.getenv("ENV") or "dev").strip().lower()
    return env in ("prod", "production", "staging")


def enforce_jwt_secret_baseline() -> None:
    """
    Fail fast in non-dev/test environments when the token signing secret is
    left at the insecure default, so forged admin tokens are not accepted.
    """
    if ENV_LOWER not in ("dev", "test") and JWT_SECRET == "change-me-bus-jwt":
        raise RuntimeError("JWT_SECRET must be set in non-dev environments")
