"""Configuration objects loaded by ``create_app``."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root when present.
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///servio.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DEBUG = _flag("FLASK_DEBUG")
    TESTING = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    BUSINESS_NAME = os.environ.get("BUSINESS_NAME", "Servio")
    BUSINESS_EMAIL = os.environ.get("BUSINESS_EMAIL")
    UPI_ID = os.environ.get("UPI_ID")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "INR")

    # 1 reward point per REWARD_POINT_UNIT currency units paid.
    REWARD_POINT_UNIT = int(os.environ.get("REWARD_POINT_UNIT", "100"))
    DEFAULT_SCHEDULE_DAYS = int(os.environ.get("DEFAULT_SCHEDULE_DAYS", "7"))
    RESET_CODE_TTL_MINUTES = int(os.environ.get("RESET_CODE_TTL_MINUTES", "15"))
    ALLOW_CLIENT_VERIFICATION = _flag("ALLOW_CLIENT_VERIFICATION", "1")

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID")

    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "1")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER")
    NOTIFICATION_TIMEOUT = float(os.environ.get("NOTIFICATION_TIMEOUT", "10"))
    NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "5"))


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = "DEBUG"


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    BUSINESS_EMAIL = "ops@servio.test"
    UPI_ID = "servio@upi"
    MAIL_SERVER = None
    STRIPE_SECRET_KEY = None
    STRIPE_WEBHOOK_SECRET = None
    GOOGLE_CLIENT_ID = "test-google-client"
