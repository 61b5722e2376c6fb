"""
Great Loom
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'great_loom_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _env_float(name, default):
    return float(os.getenv(name, str(default)))


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis (rate limiter storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    RATELIMIT_ENABLED = True

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Loom engine ──────────────────────────────────────────────────────
    LOOM_DEFAULT_WINDOW_WEEKS = _env_int("LOOM_DEFAULT_WINDOW_WEEKS", 6)
    LOOM_TIMEZONE = os.getenv("LOOM_TIMEZONE", "Australia/Sydney")
    LOOM_PROJECTOR_WORKERS = _env_int("LOOM_PROJECTOR_WORKERS", 4)
    LOOM_LOCK_TTL_SECONDS = _env_int("LOOM_LOCK_TTL_SECONDS", 900)
    LOOM_QUALITY_AUDIT_PROBABILITY = _env_float("LOOM_QUALITY_AUDIT_PROBABILITY", 0.05)
    LOOM_QUALITY_AUDIT_SEED = os.getenv("LOOM_QUALITY_AUDIT_SEED")
    LOOM_STAFF_WPU_THRESHOLD = _env_float("LOOM_STAFF_WPU_THRESHOLD", 5.0)
    LOOM_VEHICLE_CAPACITY = _env_int("LOOM_VEHICLE_CAPACITY", 10)
    LOOM_NOTIFY_WEBHOOK_URL = os.getenv("LOOM_NOTIFY_WEBHOOK_URL")
    LOOM_NOTIFY_WEBHOOK_TIMEOUT = _env_float("LOOM_NOTIFY_WEBHOOK_TIMEOUT", 5.0)


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
    # In-memory SQLite uses a single static connection; pool sizing does not apply
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    RATELIMIT_ENABLED = False
    LOOM_PROJECTOR_WORKERS = 2
    LOOM_TIMEZONE = "UTC"
    LOOM_QUALITY_AUDIT_SEED = "1234"
    LOOM_NOTIFY_WEBHOOK_URL = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
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

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
