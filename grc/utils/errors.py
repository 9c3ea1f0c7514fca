"""Standardised API error responses.

Usage
-----
    from grc.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "ApprovalItem not found")
    return api_error(E.VALIDATION_REQUIRED, "approverId is required")
    return api_error(E.CONFLICT_STATE, str(exc), details={"state": "approved"})
"""

from __future__ import annotations

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from grc.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from grc.models import db

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_VERSION: 409,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """``({"error", "code", "details"?}, status)`` for a Flask view.

    Status defaults to the code's entry in ``_DEFAULT_STATUS``.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)


def register_error_handlers(bp) -> None:
    """Attach the service-exception → HTTP mapping to a blueprint."""

    @bp.errorhandler(ValidationError)
    def _validation(exc):
        missing = "required" in exc.details.values()
        code = E.VALIDATION_REQUIRED if missing else E.VALIDATION_INVALID
        return api_error(code, str(exc), details=exc.details)

    @bp.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @bp.errorhandler(InvalidStateError)
    def _invalid_state(exc):
        return api_error(E.CONFLICT_STATE, str(exc), details={"state": exc.current_state})

    @bp.errorhandler(ConflictError)
    def _conflict(exc):
        code = E.CONFLICT_VERSION if exc.field == "version" else E.CONFLICT_DUPLICATE
        return api_error(code, str(exc))

    @bp.errorhandler(Exception)
    def _unexpected(exc):
        if isinstance(exc, HTTPException):
            return exc
        db.session.rollback()
        logger.exception("Unhandled error in %s: %s", bp.name, exc)
        return api_error(E.INTERNAL, "Internal server error")
