"""
Storefront: environment configuration

Read once at import, the same way each service entry point reads its
connection strings. Business settings (shipping, tax, payment toggles) are
not here; they live in the settings document (see settings_store).
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./storefront.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

APP_ENV = os.environ.get("APP_ENV", "production")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]

# Payment gateway
RAZORPAY_API_URL = os.environ.get("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

WHATSAPP_NUMBER = os.environ.get("WHATSAPP_NUMBER", "")

# Outgoing mail
SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
MAIL_FROM = os.environ.get("MAIL_FROM", SMTP_USER)
STORE_NAME = os.environ.get("STORE_NAME", "Martok Store")

ORDER_EVENTS_CHANNEL = "order_events"


def is_development() -> bool:
    return APP_ENV.lower() in {"development", "dev", "local"}
