import os
from decimal import Decimal

from dateutil import tz


def _bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
REDIS_URL = os.getenv("REDIS_URL")
RABBIT_URL = os.getenv("RABBIT_URL")  # optional, notifications are dropped without it

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

GROUND_SERVICE_URL = os.getenv("GROUND_SERVICE_URL") or "http://ground-service:8000"

CASHFREE_APP_ID = os.getenv("CASHFREE_APP_ID")
CASHFREE_SECRET_KEY = os.getenv("CASHFREE_SECRET_KEY")
CASHFREE_MODE = os.getenv("CASHFREE_MODE") or "production"
CASHFREE_SANDBOX = CASHFREE_MODE == "test"
CASHFREE_API_URL = os.getenv("CASHFREE_API_URL") or (
    "https://sandbox.cashfree.com/pg" if CASHFREE_SANDBOX else "https://api.cashfree.com/pg"
)
CASHFREE_CHECKOUT_URL = (
    "https://sandbox.cashfree.com/pg/view" if CASHFREE_SANDBOX else "https://payments.cashfree.com/pg/view"
)
CASHFREE_API_VERSION = os.getenv("CASHFREE_API_VERSION") or "2023-08-01"
CASHFREE_WEBHOOK_SECRET = os.getenv("CASHFREE_WEBHOOK_SECRET")

PAYMENT_RETURN_URL = os.getenv("PAYMENT_RETURN_URL") or "https://example.com/payment/callback?booking_id={booking_id}"
PAYMENT_NOTIFY_URL = os.getenv("PAYMENT_NOTIFY_URL") or "https://example.com/payments/webhook"

GROUND_TIMEZONE = os.getenv("GROUND_TIMEZONE") or "Asia/Kolkata"

HOLD_TTL_MINUTES = int(os.getenv("HOLD_TTL_MINUTES", "5"))
PENDING_CONFLICT_WINDOW_MINUTES = int(os.getenv("PENDING_CONFLICT_WINDOW_MINUTES", "10"))
RECENT_RECHECK_SECONDS = int(os.getenv("RECENT_RECHECK_SECONDS", "30"))
PENDING_PAYMENT_TTL_MINUTES = int(os.getenv("PENDING_PAYMENT_TTL_MINUTES", "15"))

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
ENABLE_EXPIRY_WORKER = _bool(os.getenv("ENABLE_EXPIRY_WORKER"), True)

GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
CATALOG_TIMEOUT_SECONDS = float(os.getenv("CATALOG_TIMEOUT_SECONDS", "3"))
WEBHOOK_DEDUP_TTL_SECONDS = int(os.getenv("WEBHOOK_DEDUP_TTL_SECONDS", "86400"))
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "120"))

MIN_ORDER_AMOUNT = Decimal(os.getenv("MIN_ORDER_AMOUNT", "1.00"))
CONVENIENCE_FEE_RATE = Decimal(os.getenv("CONVENIENCE_FEE_RATE", "0.02"))
DEFAULT_CURRENCY = "INR"

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set")

GROUND_TZ = tz.gettz(GROUND_TIMEZONE)
if GROUND_TZ is None:
    raise RuntimeError(f"Unknown GROUND_TIMEZONE: {GROUND_TIMEZONE}")
