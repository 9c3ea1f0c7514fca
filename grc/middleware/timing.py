"""
Request timing middleware.

Stamps every response with X-Request-ID and X-Request-Duration-Ms and
writes one access log line per API call, tagged with the acting user and
the plan / factor / approval item the route addresses. Calls slower than
SLOW_REQUEST_MS (config) are logged as warnings.
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

# Load balancers hit these every few seconds
_QUIET_PATHS = frozenset({"/api/health/ready", "/api/health/live"})

# Route parameters worth carrying into the access log
_RESOURCE_ARGS = ("plan_id", "factor_id", "item_id", "notification_id", "job_name")


def _log_level(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if duration_ms > current_app.config.get("SLOW_REQUEST_MS", 1000):
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path in _QUIET_PATHS or not request.path.startswith("/api/"):
            return response

        view_args = request.view_args or {}
        extra = {
            "request_id": g.request_id,
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
            "user": request.headers.get("X-User"),
        }
        extra.update({k: view_args[k] for k in _RESOURCE_ARGS if k in view_args})

        level = _log_level(response.status_code, elapsed_ms)
        label = {logging.ERROR: "Server error", logging.WARNING: "Slow request"}.get(level, "Request")
        logger.log(level, "%s: %s %s %d (%.0fms)", label,
                   request.method, request.path, response.status_code, elapsed_ms,
                   extra=extra)
        return response
