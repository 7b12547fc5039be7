# backend/storefront/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Which discount tables are authoritative: "campaigns" (campaign + rule
    # tables) or "legacy" (single discounts table). Never both.
    DISCOUNT_SCHEMA = os.environ.get("DISCOUNT_SCHEMA", "campaigns")

    # Pricing
    CURRENCY = os.environ.get("CURRENCY", "KES")
    VAT_RATE_BPS = int(os.environ.get("VAT_RATE_BPS", "0"))  # 1600 = 16%

    # Notifications
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))
    LARGE_ORDER_MILESTONE_CENTS = int(os.environ.get("LARGE_ORDER_MILESTONE_CENTS", "1000000"))
    NOTIFICATION_HISTORY_LIMIT = 50
    NOTIFICATION_OWNER_KEY = "admin"
    NOTIFICATIONS_AUTOSTART = _env_bool("NOTIFICATIONS_AUTOSTART", True)

    # Event stream reconnection backoff
    RECONNECT_BASE_DELAY_MS = 1000
    RECONNECT_MAX_DELAY_MS = 30000
    RECONNECT_MAX_ATTEMPTS = 5
