"""
Health check blueprint.

Endpoints:
    GET /api/health/ready  process is up (load balancer check)
    GET /api/health/live   database and read-model cache status

/live answers 503 when the database is unreachable. A cache outage only
marks the service ``degraded``: reads fall back to recomputation.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from grc.models import db
from grc.services import cache_service

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/health")


def _check_database() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"})


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _check_database(),
        "cache": cache_service.health_check(),
    }
    if checks["database"]["status"] != "ok":
        status, code = "unhealthy", 503
    elif checks["cache"]["status"] != "ok":
        status, code = "degraded", 200
    else:
        status, code = "healthy", 200

    return jsonify({
        "status": status,
        "checks": checks,
        "environment": "testing" if current_app.testing else ("debug" if current_app.debug else "production"),
    }), code
