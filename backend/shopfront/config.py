# backend/shopfront/config.py
from __future__ import annotations
import os
from decimal import Decimal


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.environ.get(name) or default)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance folder unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///shopfront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    PORT = _env_int("PORT", 3000)

    # Single settlement currency for every gateway call
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "SGD")

    # Hosted-redirect gateway (PayPal REST v2)
    PAYPAL_API = os.environ.get("PAYPAL_API", "https://api-m.sandbox.paypal.com")
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")

    # QR gateway (NETS QR sandbox)
    NETS_API = os.environ.get("NETS_API", "https://sandbox.nets.openapipaas.com")
    NETS_API_KEY = os.environ.get("API_KEY")
    NETS_PROJECT_ID = os.environ.get("PROJECT_ID")
    NETS_TXN_ID = os.environ.get("NETS_TXN_ID", "sandbox_nets|m|8ff8e5b6-d43e-4786-8ac5-7accf8c5bd9b")

    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

    # QR confirmation window and stream poll cadence
    QR_PAYMENT_TIMEOUT_SECONDS = _env_int("QR_PAYMENT_TIMEOUT_SECONDS", 240)
    QR_STREAM_POLL_SECONDS = float(os.environ.get("QR_STREAM_POLL_SECONDS", "3"))

    # Promotion registry seed (admin-mutable at runtime, not persisted)
    PROMOTION_KEYWORDS = ["milk", "yogurt", "cheese", "butter", "dairy"]
    PROMOTION_PERCENT = 10

    # Loyalty program
    LOYALTY_EARN_RATE = _env_int("LOYALTY_EARN_RATE", 10)  # points per currency unit
    LOYALTY_POINT_VALUE = _env_decimal("LOYALTY_POINT_VALUE", "0.01")  # currency per point
    LOYALTY_MAX_REDEMPTION_PERCENT = _env_int("LOYALTY_MAX_REDEMPTION_PERCENT", 50)

    # Refunds
    REFUND_WINDOW_MINUTES = _env_int("REFUND_WINDOW_MINUTES", 30)
    REFUND_VELOCITY_LIMIT = _env_int("REFUND_VELOCITY_LIMIT", 3)
    REFUND_VELOCITY_WINDOW_HOURS = _env_int("REFUND_VELOCITY_WINDOW_HOURS", 24)
    REFUND_SUSPENSION_MINUTES = _env_int("REFUND_SUSPENSION_MINUTES", 30)

    # Fraud/velocity monitor thresholds
    FRAUD_PAYMENT_LIMIT = _env_int("FRAUD_PAYMENT_LIMIT", 5)
    FRAUD_PAYMENT_WINDOW_MINUTES = _env_int("FRAUD_PAYMENT_WINDOW_MINUTES", 3)
    FRAUD_REFUND_LIMIT = _env_int("FRAUD_REFUND_LIMIT", 5)
    FRAUD_REFUND_WINDOW_MINUTES = _env_int("FRAUD_REFUND_WINDOW_MINUTES", 1)
    FRAUD_REFUND_RATIO = _env_decimal("FRAUD_REFUND_RATIO", "0.5")
    FRAUD_RATIO_WINDOW_DAYS = _env_int("FRAUD_RATIO_WINDOW_DAYS", 30)
    FRAUD_TOPUP_REFUND_WINDOW_MINUTES = _env_int("FRAUD_TOPUP_REFUND_WINDOW_MINUTES", 10)
    FRAUD_AVERAGE_MULTIPLIER = _env_int("FRAUD_AVERAGE_MULTIPLIER", 5)
    FRAUD_AVERAGE_MIN_ORDERS = _env_int("FRAUD_AVERAGE_MIN_ORDERS", 3)

    # Bootstrap admin created by `flask system init`
    DEFAULT_ADMIN_EMAIL = os.environ.get("DEFAULT_ADMIN_EMAIL", "admin@shopfront.local")
