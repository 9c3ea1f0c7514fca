"""
GRC Core Platform
Configuration classes for the Flask app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")]())

Domain settings (scoring policy, SLA table, cache TTL) live on the base
class and can be overridden per environment or by subclassing.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _database_url(env_var="DATABASE_URL", default=None):
    """Read a database URL, rewriting Heroku-style postgres:// for SQLAlchemy 2.x."""
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Per remote address, Flask-Limiter syntax
    RATELIMIT_ENABLED = True
    API_RATE_LIMIT = os.getenv("API_RATE_LIMIT", "120/minute")
    SCHEDULER_RATE_LIMIT = os.getenv("SCHEDULER_RATE_LIMIT", "10/minute")

    # Requests slower than this (ms) are logged as warnings
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # ── Audit prioritization ─────────────────────────────────────────────
    # Contribution of each input to the 0-100 score:
    #   riskScore * 0.4, (strategicPriority / 3) * 20, previous result lookup,
    #   fixed bonuses for fraud history, regulatory and management requests
    PRIORITIZATION_WEIGHTS = {
        "risk_score": 0.4,
        "strategic_priority": 20,
        "previous_audit_result": {"bad": 15, "regular": 8, "good": 2, "none": 0},
        "fraud_history": 15,
        "regulatory_requirement": 5,
        "management_request": 5,
    }
    # Inclusive lower bound per level; anything below "medium" is "low"
    PRIORITY_LEVEL_THRESHOLDS = {"critical": 80, "high": 60, "medium": 40}

    # ── Approval workflow ────────────────────────────────────────────────
    # Hours a pending item may wait before the SLA sweep escalates it
    APPROVAL_SLA_HOURS = {"critical": 4, "high": 24, "medium": 72, "low": 168}
    APPROVAL_AUTO_APPROVE_RISK_LEVELS = ("low",)
    APPROVAL_TREND_DAYS = 7
    APPROVAL_TOP_APPROVERS = 5

    # Dashboard, metrics and plan listings, seconds (0 = no caching)
    READ_MODEL_CACHE_TTL = int(os.getenv("READ_MODEL_CACHE_TTL", "60"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        default=f"sqlite:///{os.path.join(basedir, 'instance', 'grc_dev.db')}"
    )
    # SQLite file databases reject the pool sizing options
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS) if os.getenv("DATABASE_URL") else {}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", default="sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = "memory://"
    READ_MODEL_CACHE_TTL = 0


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, ok in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not ok
        ]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
