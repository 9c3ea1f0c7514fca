"""
GRC Core Platform
Flask Application Factory.

Usage:
    from grc import create_app
    app = create_app()           # APP_ENV, defaults to "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine, event
from sqlalchemy.exc import SQLAlchemyError

from grc.config import config
from grc.models import db
from grc.middleware.logging_config import configure_logging
from grc.middleware.rate_limiter import init_rate_limits
from grc.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # limits are attached per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", os.getenv("REDIS_URL", "memory://")),
)


@event.listens_for(sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` (development, testing, production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _install_request_guards(app)
    _create_tables(app)
    _register_blueprints(app)
    _register_http_errors(app)
    init_rate_limits(app, limiter)

    from grc.cli import register_cli
    register_cli(app)

    # Importing the module registers the @register_job functions
    from grc.services import scheduled_jobs  # noqa: F401
    from grc.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    # Empty (production default) allows no cross-origin callers
    origins = app.config.get("CORS_ORIGINS", "*")
    if origins == "*":
        CORS(app)
    else:
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])


def _install_request_guards(app):
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)

    @app.before_request
    def _guard_api_request():
        limit = app.config.get("MAX_CONTENT_LENGTH")
        if limit and request.content_length and request.content_length > limit:
            abort(413, description="Request body too large")
        if (request.method in ("POST", "PUT", "PATCH")
                and request.path.startswith("/api/")
                and request.data
                and "json" not in (request.content_type or "")):
            abort(415, description="Content-Type must be application/json")


def _create_tables(app):
    # Every model module must be imported before create_all / Alembic autogenerate
    from grc.models import approval, audit_planning, notification, scheduling  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            logger.warning("db.create_all() failed, run migrations: %s", exc)


def _register_blueprints(app):
    from grc.blueprints.approval_bp import approval_bp
    from grc.blueprints.health_bp import health_bp
    from grc.blueprints.notification_bp import notification_bp
    from grc.blueprints.prioritization_bp import prioritization_bp
    from grc.blueprints.scheduler_bp import scheduler_bp

    for bp in (prioritization_bp, approval_bp, notification_bp, scheduler_bp, health_bp):
        app.register_blueprint(bp)


def _register_http_errors(app):
    """JSON bodies for errors raised outside the blueprint handlers."""

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": e.description, "code": "ERR_PAYLOAD_TOO_LARGE"}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description, "code": "ERR_UNSUPPORTED_MEDIA_TYPE"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED",
                "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled server error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500
