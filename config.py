"""
Runtime configuration

Values come from the environment (a local .env file is loaded first).
"""

import logging
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _csv(value: str) -> list:
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Sessions
JWT_SECRET = os.getenv("JWT_SECRET", "footballsupplies-dev-secret-change-me")
JWT_ALGO = "HS256"
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", 7))

# Login hardening
MAX_LOGIN_ATTEMPTS = 3  # lock on the attempt after this many failures
LOCK_MINUTES = 15
OTP_TTL_MINUTES = 10
OTP_BYPASS_EMAILS = _csv(os.getenv("OTP_BYPASS_EMAILS", ""))

# Outbound mail
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
SENDGRID_API_BASE = os.getenv("SENDGRID_API_BASE", "https://api.sendgrid.com").rstrip("/")
SENDGRID_SANDBOX = _flag(os.getenv("SENDGRID_SANDBOX", "false"))
EMAIL_FROM = os.getenv("EMAIL_FROM")
EMAIL_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", 30))

# Default admin seeded at startup
ADMIN_NAME = os.getenv("ADMIN_NAME", "Admin")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# Orders
FREE_SHIPPING_THRESHOLD = 1000
SHIPPING_FEE = 100
ORDER_RATE_LIMIT = 5
ORDER_RATE_WINDOW_SECONDS = 15 * 60

# HTTP
CORS_ORIGINS = _csv(os.getenv("CORS_ORIGINS", "*")) or ["*"]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
