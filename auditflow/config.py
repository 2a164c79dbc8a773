"""
Audit Engagement Workflow
Configuration classes for the Flask app factory.

Selected by ``APP_ENV`` (development | testing | production). Every value
can be overridden from the environment; production refuses to start
without DATABASE_URL and SECRET_KEY (see ``ProductionConfig.check``).
"""

import os
import secrets

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
INSTANCE_DIR = os.path.join(ROOT_DIR, "instance")


def _database_url(default=None):
    url = os.getenv("DATABASE_URL") or default
    # SQLAlchemy 2.0 only accepts the postgresql:// scheme
    if url and url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Team and client documents
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(INSTANCE_DIR, "uploads"))
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_UPLOAD_MB", "25")) * 1024 * 1024

    ENGAGEMENT_RATE_LIMIT = os.getenv("ENGAGEMENT_RATE_LIMIT", "120/minute")

    @classmethod
    def check(cls):
        """Raise RuntimeError when the environment cannot run this config."""


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "sqlite:///" + os.path.join(INSTANCE_DIR, "auditflow_dev.db"),
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    # in-memory SQLite rejects pool options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": 20,
    }

    @classmethod
    def check(cls):
        missing = [name for name in ("DATABASE_URL", "SECRET_KEY") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
