"""
ITSM Change Lifecycle Engine
Configuration classes, selected by ``APP_ENV``.

The factory instantiates the chosen class, so ``ProductionConfig`` can
refuse to start when a required secret is missing.
"""

import os
import secrets

PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(default=None):
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return default
    # SQLAlchemy only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Empty means the rate limiter keeps its counters in memory
    REDIS_URL = os.getenv("REDIS_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    MAX_CONTENT_LENGTH = 1024 * 1024

    # Access tokens from the identity provider; SECRET_KEY verifies them when unset
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "")
    JWT_LEEWAY_SECONDS = _env_int("JWT_LEEWAY_SECONDS", 0)

    CRON_SECRET = os.getenv("CRON_SECRET", "dev-secret")
    AUTOMATION_INTERVAL_SECONDS = _env_int("AUTOMATION_INTERVAL_SECONDS", 60)
    # Zero-argument callable returning an aware UTC datetime; None = wall clock
    AUTOMATION_CLOCK = None


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "sqlite:///" + os.path.join(PROJECT_ROOT, "instance", "itsm_dev.db")
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    CRON_SECRET = "test-cron-secret"
    JWT_SECRET_KEY = "test-jwt-secret-for-identity-tokens-only"


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    CRON_SECRET = os.getenv("CRON_SECRET")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": _env_int("DB_POOL_SIZE", 5),
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # Scans must never hold row locks for long
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = []
        if not self.SQLALCHEMY_DATABASE_URI:
            missing.append("DATABASE_URL")
        if not os.getenv("SECRET_KEY"):
            missing.append("SECRET_KEY")
        if not self.CRON_SECRET:
            missing.append("CRON_SECRET")
        if missing:
            raise RuntimeError(
                f"Production requires these environment variables: {', '.join(missing)}"
            )


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
