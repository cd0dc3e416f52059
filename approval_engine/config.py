"""
Contractor Document Approval Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import json
import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'approval_engine_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

# Stage → approver fallbacks used when a workflow has no explicit assignment.
# Keyed by document type; "default" applies to every other type.
_DEFAULT_APPROVERS = {
    "default": {
        1: "compliance-officer-1",
        2: "compliance-manager-1",
        3: "legal-reviewer-1",
        4: "operations-manager-1",
    },
}

# Escalation chain per stage, indexed by escalation level (1-based).
# The last entry is reused once the chain is exhausted.
_ESCALATION_TARGETS = {
    "default": {
        1: ["compliance-manager-1", "operations-director-1"],
        2: ["compliance-director-1", "operations-director-1"],
        3: ["legal-director-1", "operations-director-1"],
        4: ["operations-director-1", "managing-director-1"],
    },
}


def _json_env(name: str, default):
    """Read a JSON-encoded mapping from the environment, else ``default``."""
    raw = os.getenv(name)
    if not raw:
        return default
    return json.loads(raw)


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

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Approval engine
    APPROVAL_DEFAULT_SLA_HOURS = int(os.getenv("APPROVAL_DEFAULT_SLA_HOURS", "24"))
    APPROVAL_MAX_SLA_HOURS = int(os.getenv("APPROVAL_MAX_SLA_HOURS", "720"))
    APPROVAL_URGENT_WINDOW_HOURS = float(os.getenv("APPROVAL_URGENT_WINDOW_HOURS", "2"))
    APPROVAL_QUEUE_DEFAULT_LIMIT = int(os.getenv("APPROVAL_QUEUE_DEFAULT_LIMIT", "50"))
    APPROVAL_QUEUE_MAX_LIMIT = int(os.getenv("APPROVAL_QUEUE_MAX_LIMIT", "200"))
    APPROVAL_MAX_ESCALATION_LEVEL = int(os.getenv("APPROVAL_MAX_ESCALATION_LEVEL", "3"))
    APPROVAL_DEFAULT_APPROVERS = _json_env("APPROVAL_DEFAULT_APPROVERS", _DEFAULT_APPROVERS)
    APPROVAL_ESCALATION_TARGETS = _json_env("APPROVAL_ESCALATION_TARGETS", _ESCALATION_TARGETS)
    APPROVAL_SWEEP_RATE_LIMIT = os.getenv("APPROVAL_SWEEP_RATE_LIMIT", "6/minute")
    APPROVAL_DOCUMENT_TYPES = [
        t.strip()
        for t in os.getenv(
            "APPROVAL_DOCUMENT_TYPES",
            "insurance,bee_certificate,tax_clearance,company_registration,safety_certificate",
        ).split(",")
        if t.strip()
    ]


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


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
