# backend/storepos/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storepos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storepos.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # UPI collection account. A value saved through /api/config/upi-id wins.
    UPI_ID = os.environ.get("UPI_ID")
    UPI_PAYEE_NAME = os.environ.get("UPI_PAYEE_NAME", "Store")
    UPI_CURRENCY = os.environ.get("UPI_CURRENCY", "INR")

    # Shared secret for signed payment-gateway callbacks (unsigned if unset)
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET")

    # Default age used by `flask payments expire-pending`
    PENDING_UPI_TIMEOUT_MINUTES = int(os.environ.get("PENDING_UPI_TIMEOUT_MINUTES", "30"))

    SESSION_ABSOLUTE_TIMEOUT_HOURS = int(os.environ.get("SESSION_ABSOLUTE_TIMEOUT_HOURS", "24"))
    SESSION_IDLE_TIMEOUT_HOURS = int(os.environ.get("SESSION_IDLE_TIMEOUT_HOURS", "2"))
