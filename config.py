"""
Application configuration — environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    DATABASE = os.environ.get("DATABASE_PATH", str(BASE_DIR / "streak_arena.db"))

    # Session security
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    PERMANENT_SESSION_LIFETIME = 86400

    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1 MB of JSON is plenty

    # Challenge timings (seconds)
    CHALLENGE_PENDING_TIMEOUT = int(os.environ.get("CHALLENGE_PENDING_TIMEOUT", "30"))
    CHALLENGE_LINK_TIMEOUT = int(os.environ.get("CHALLENGE_LINK_TIMEOUT", "86400"))
    CHALLENGE_JOIN_TIMEOUT = int(os.environ.get("CHALLENGE_JOIN_TIMEOUT", "120"))
    CHALLENGE_GRACE_SECONDS = int(os.environ.get("CHALLENGE_GRACE_SECONDS", "2"))
    CHALLENGE_SWEEP_INTERVAL = int(os.environ.get("CHALLENGE_SWEEP_INTERVAL", "60"))
    CHALLENGE_MAX_VIOLATIONS = int(os.environ.get("CHALLENGE_MAX_VIOLATIONS", "3"))
    LEADERBOARD_CACHE_TTL = 30
    # Seconds a socket connect or presence ping keeps a user listed as online
    PRESENCE_WINDOW_SECONDS = int(os.environ.get("PRESENCE_WINDOW_SECONDS", "300"))
    # Reconcile in-process as soon as both finished flags are set
    CHALLENGE_AUTO_RECONCILE = os.environ.get("CHALLENGE_AUTO_RECONCILE", "1") == "1"

    # AI provider keys
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
    ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
    QUESTION_MODEL = os.environ.get("QUESTION_MODEL", "gpt-4o-mini")
    QUESTION_FALLBACK_MODEL = os.environ.get("QUESTION_FALLBACK_MODEL", "claude-sonnet-4-20250514")

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Email
    EMAIL_BACKEND = os.environ.get("EMAIL_BACKEND", "log")  # "log" or "smtp"
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")
    BASE_URL = os.environ.get("BASE_URL", "http://localhost:5001")

    # Redis: cache, RQ queue and the SocketIO message queue
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Realtime
    SOCKETIO_ASYNC_MODE = os.environ.get("SOCKETIO_ASYNC_MODE", "threading")
    SOCKETIO_CORS_ORIGINS = os.environ.get("SOCKETIO_CORS_ORIGINS") or None

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    SESSION_COOKIE_SECURE = True

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not cls.OPENAI_API_KEY and not cls.ANTHROPIC_API_KEY:
            warnings.warn("No OPENAI_API_KEY or ANTHROPIC_API_KEY set; challenge questions cannot be generated.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    RATELIMIT_ENABLED = False
    EMAIL_BACKEND = "log"
    REDIS_URL = ""


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
