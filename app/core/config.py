# app/core/config.py
from __future__ import annotations

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str = "") -> str:
    return (os.getenv(key, default) or default).strip()


DATABASE_URL = _env("DATABASE_URL", "sqlite:///./marketplace.db")

STRIPE_SECRET_KEY = _env("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = _env("STRIPE_WEBHOOK_SECRET")
STRIPE_WEBHOOK_TOLERANCE = int(_env("STRIPE_WEBHOOK_TOLERANCE", "300"))

TEMPLATE_PLATFORM_FEE_PERCENT = Decimal(_env("TEMPLATE_PLATFORM_FEE_PERCENT", "30"))
SERVICE_PLATFORM_FEE_PERCENT = Decimal(_env("SERVICE_PLATFORM_FEE_PERCENT", "20"))
CURRENCY = _env("CURRENCY", "usd").lower()

MIN_WITHDRAWAL_AMOUNT = Decimal(_env("MIN_WITHDRAWAL_AMOUNT", "10"))
MAX_WITHDRAWAL_AMOUNT = Decimal(_env("MAX_WITHDRAWAL_AMOUNT", "100000"))

REFUND_WINDOW_DAYS = int(_env("REFUND_WINDOW_DAYS", "14"))

ORDER_NUMBER_PREFIX = _env("ORDER_NUMBER_PREFIX", "FLW")
SERVICE_ORDER_NUMBER_PREFIX = _env("SERVICE_ORDER_NUMBER_PREFIX", "SRV")
LICENSE_KEY_PREFIX = _env("LICENSE_KEY_PREFIX", "FLW")

CLIENT_URL = _env("CLIENT_URL", "http://localhost:3000").rstrip("/")

JWT_SECRET = _env("JWT_SECRET", "dev-change-me")
JWT_ALG = _env("JWT_ALG", "HS256")
JWT_EXPIRES_MIN = int(_env("JWT_EXPIRES_MIN", "10080"))  # 7 days

CORS_ORIGINS = _env("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")

POSTMARK_SERVER_TOKEN = _env("POSTMARK_SERVER_TOKEN")
POSTMARK_FROM_EMAIL = _env("POSTMARK_FROM_EMAIL")
POSTMARK_MESSAGE_STREAM = _env("POSTMARK_MESSAGE_STREAM", "outbound") or "outbound"
POSTMARK_REPLY_TO = _env("POSTMARK_REPLY_TO")
SUPPORT_EMAIL = _env("SUPPORT_EMAIL", "support@flowbites.com")
BRAND_NAME = _env("BRAND_NAME", "Flowbites")

LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()


def stripe_is_configured(secret_key: str | None = None) -> bool:
    """
    Placeholder or missing keys mean we run in simulate mode: orders are
    fulfilled in place instead of going through a real checkout session.
    """
    key = STRIPE_SECRET_KEY if secret_key is None else (secret_key or "").strip()
    if not key or len(key) < 20:
        return False
    if "your_stripe" in key:
        return False
    return key.startswith("sk_") or key.startswith("rk_")
