"""
NPD Tracker
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
    validate_config(app)
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'npd_tracker_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Identity provider (Clerk)
    CLERK_SECRET_KEY = os.getenv("CLERK_SECRET_KEY")
    CLERK_JWT_PUBLIC_KEY = os.getenv("CLERK_JWT_PUBLIC_KEY")
    CLERK_WEBHOOK_SIGNING_SECRET = os.getenv("CLERK_WEBHOOK_SIGNING_SECRET")

    # Backend deployment
    BACKEND_URL = os.getenv("BACKEND_URL", "")

    # Email (Resend); log-only when RESEND_API_KEY is unset
    RESEND_API_KEY = os.getenv("RESEND_API_KEY")
    RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
    INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@npd-tracker.go.id")
    FROM_NAME = os.getenv("FROM_NAME", "NPD Tracker")
    EMAIL_MAX_ATTEMPTS = 3
    EMAIL_BACKOFF_BASE_MS = 1000

    # Feature flags
    ENABLE_EMAIL_NOTIFICATIONS = os.getenv("ENABLE_EMAIL_NOTIFICATIONS", "false")
    ENABLE_PDF_WATERMARK = os.getenv("ENABLE_PDF_WATERMARK", "true")
    ENABLE_CSV_IMPORT = os.getenv("ENABLE_CSV_IMPORT", "true")

    # Rate limiting (Flask-Limiter)
    PDF_RATE_LIMIT_PER_MINUTE = os.getenv("PDF_RATE_LIMIT_PER_MINUTE", "5")
    GENERAL_RATE_LIMIT_PER_MINUTE = os.getenv("GENERAL_RATE_LIMIT_PER_MINUTE", "60")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI") or os.getenv("REDIS_URL", "memory://")
    RATELIMIT_HEADERS_ENABLED = True

    # Realization share of pagu (percent) that triggers a budget_alert
    BUDGET_ALERT_THRESHOLD_PERCENT = os.getenv("BUDGET_ALERT_THRESHOLD_PERCENT", "90")

    # Uploads
    MAX_FILE_SIZE = os.getenv("MAX_FILE_SIZE", "10485760")
    UPLOAD_CONFIRM_TIMEOUT_MINUTES = os.getenv("UPLOAD_CONFIRM_TIMEOUT_MINUTES", "60")
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(basedir, "instance", "uploads"))

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = "memory://"

    CLERK_SECRET_KEY = "test-clerk-secret"
    CLERK_JWT_PUBLIC_KEY = None
    CLERK_WEBHOOK_SIGNING_SECRET = "whsec_dGVzdC13ZWJob29rLXNpZ25pbmctc2VjcmV0"
    INTERNAL_API_KEY = "test-internal-key"
    RESEND_API_KEY = None
    ENABLE_EMAIL_NOTIFICATIONS = "false"
    ENABLE_CSV_IMPORT = "true"
    UPLOAD_FOLDER = os.getenv("TEST_UPLOAD_FOLDER", os.path.join(basedir, "instance", "test_uploads"))


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


_FLAG_KEYS = ("ENABLE_EMAIL_NOTIFICATIONS", "ENABLE_PDF_WATERMARK", "ENABLE_CSV_IMPORT")
_POSITIVE_INT_KEYS = (
    "PDF_RATE_LIMIT_PER_MINUTE",
    "GENERAL_RATE_LIMIT_PER_MINUTE",
    "MAX_FILE_SIZE",
    "UPLOAD_CONFIRM_TIMEOUT_MINUTES",
    "BUDGET_ALERT_THRESHOLD_PERCENT",
)
_PRODUCTION_REQUIRED = (
    "SQLALCHEMY_DATABASE_URI",
    "CLERK_SECRET_KEY",
    "CLERK_WEBHOOK_SIGNING_SECRET",
    "INTERNAL_API_KEY",
)


def validate_config(app, production=None):
    """
    Normalise and validate the loaded configuration.

    Feature flags become booleans and numeric thresholds become ints.
    Missing required values abort startup with RuntimeError when running
    in production (``production`` defaults to ``not DEBUG and not TESTING``).
    """
    cfg = app.config

    for key in _FLAG_KEYS:
        raw = cfg.get(key, False)
        cfg[key] = raw if isinstance(raw, bool) else str(raw).strip().lower() in _TRUE_VALUES

    for key in _POSITIVE_INT_KEYS:
        raw = cfg.get(key)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise RuntimeError(f"{key} must be an integer, got {raw!r}") from None
        if value <= 0:
            raise RuntimeError(f"{key} must be positive, got {value}")
        cfg[key] = value

    if production is None:
        production = not cfg.get("DEBUG") and not cfg.get("TESTING")
    if not production:
        return

    missing = [key for key in _PRODUCTION_REQUIRED if not cfg.get(key)]
    if cfg.get("SECRET_KEY") in (None, "", _DEV_SECRET):
        missing.append("SECRET_KEY")
    if cfg["ENABLE_EMAIL_NOTIFICATIONS"] and not cfg.get("RESEND_API_KEY"):
        missing.append("RESEND_API_KEY")
    if missing:
        raise RuntimeError(
            "Missing required configuration: " + ", ".join(sorted(missing))
        )
