"""
Application configuration: environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")

    # Session security
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    PERMANENT_SESSION_LIFETIME = 86400

    # Upload limits
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", 16 * 1024 * 1024))  # 16 MB

    # Gemini
    GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY", "") or os.environ.get("API_KEY", "")
    GEMINI_TEXT_MODEL = os.environ.get("GEMINI_TEXT_MODEL", "gemini-2.5-flash")
    GEMINI_VISION_MODEL = os.environ.get("GEMINI_VISION_MODEL", "gemini-3-pro-preview")
    GEMINI_TTS_MODEL = os.environ.get("GEMINI_TTS_MODEL", "gemini-2.5-flash-preview-tts")
    GEMINI_TTS_VOICE = os.environ.get("GEMINI_TTS_VOICE", "Kore")
    AI_MAX_ATTEMPTS = int(os.environ.get("AI_MAX_ATTEMPTS", "1"))

    # Firebase (identity + document store)
    FIREBASE_API_KEY = os.environ.get("FIREBASE_API_KEY", "")
    FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID", "")
    FIREBASE_CREDENTIALS = os.environ.get("FIREBASE_CREDENTIALS", "")  # service-account JSON path

    # Document store: "firestore", "sqlite" or "memory"
    DOCUMENT_STORE = os.environ.get("DOCUMENT_STORE", "sqlite")
    DOCUMENT_DB = os.environ.get("DOCUMENT_DB", str(BASE_DIR / "studyai_documents.db"))

    # Google OAuth
    GOOGLE_OAUTH_CLIENT_ID = os.environ.get("GOOGLE_OAUTH_CLIENT_ID", "")
    GOOGLE_OAUTH_CLIENT_SECRET = os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", "")

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Background writes
    TASKS_ASYNC = _flag("TASKS_ASYNC", "1")
    TASK_WORKERS = int(os.environ.get("TASK_WORKERS", "4"))

    # Study sessions idle this long (seconds) are closed
    SESSION_IDLE_TIMEOUT = int(os.environ.get("SESSION_IDLE_TIMEOUT", "3600"))

    # Rate limiting (defaults to in-memory)
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "") or "memory://"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    SESSION_COOKIE_SECURE = True
    DOCUMENT_STORE = os.environ.get("DOCUMENT_STORE", "firestore")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not cls.FIREBASE_API_KEY:
            errors.append("FIREBASE_API_KEY must be set; sign-in is impossible without it.")

        if cls.DOCUMENT_STORE == "firestore" and not (cls.FIREBASE_CREDENTIALS or cls.FIREBASE_PROJECT_ID):
            errors.append("FIREBASE_CREDENTIALS or FIREBASE_PROJECT_ID is required for Firestore.")

        if not cls.GOOGLE_API_KEY:
            warnings.warn("GOOGLE_API_KEY is not set; AI features will be unavailable.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    DOCUMENT_STORE = "memory"
    TASKS_ASYNC = False
    FIREBASE_API_KEY = "test-firebase-key"
    GOOGLE_API_KEY = "test-google-key"
    GOOGLE_OAUTH_CLIENT_ID = ""
    GOOGLE_OAUTH_CLIENT_SECRET = ""


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
