"""Standardised API error responses.

Usage
-----
    from tracker.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Application not found")
    return api_error(E.VALIDATION, "action is required")
    return api_error(E.FORBIDDEN, "Status is in use", details="2 application(s) use this status")

Every error body has the same envelope::

    {"code": "...", "message": "...", "status_code": 400, "details": ...}
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from tracker.core.exceptions import TrackingError

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # HTTP 400
    VALIDATION = "VALIDATION"
    INVALID_ACTION = "INVALID_ACTION"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_STAGE = "INVALID_STAGE"

    # HTTP 401
    UNAUTHORIZED = "UNAUTHORIZED"

    # HTTP 403
    FORBIDDEN = "FORBIDDEN"
    TENANT_MISMATCH = "TENANT_MISMATCH"
    TERMINAL_STATUS = "TERMINAL_STATUS"
    EVALUATIONS_INCOMPLETE = "EVALUATIONS_INCOMPLETE"
    SIGNALS_NOT_MET = "SIGNALS_NOT_MET"
    FEEDBACK_REQUIRED = "FEEDBACK_REQUIRED"

    # HTTP 404 / 405 / 409 / 429
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"

    # HTTP 500
    INTERNAL = "INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION: 400,
    E.INVALID_ACTION: 400,
    E.INVALID_STATUS: 400,
    E.INVALID_STAGE: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.TENANT_MISMATCH: 403,
    E.TERMINAL_STATUS: 403,
    E.EVALUATIONS_INCOMPLETE: 403,
    E.SIGNALS_NOT_MET: 403,
    E.FEEDBACK_REQUIRED: 403,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.CONFLICT: 409,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details=None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : str | dict, optional
        Supplementary context (reference counts, failed conditions, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "code": code,
        "message": message,
        "status_code": http_status,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp):
    """Install the envelope handlers on a blueprint."""

    @bp.errorhandler(TrackingError)
    def _handle_tracking_error(error: TrackingError):
        if error.status_code >= 500:
            logger.error("%s failed: %s", request.endpoint, error.message)
        return api_error(error.code, error.message, status=error.status_code, details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return http_error(error)
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


_HTTP_CODES = {
    400: E.VALIDATION,
    401: E.UNAUTHORIZED,
    403: E.FORBIDDEN,
    404: E.NOT_FOUND,
    405: E.METHOD_NOT_ALLOWED,
    409: E.CONFLICT,
    429: E.RATE_LIMITED,
}


def http_error(error: HTTPException):
    """Render a werkzeug HTTPException (abort(), routing, limiter) in the envelope."""
    status = error.code or 500
    return api_error(_HTTP_CODES.get(status, E.INTERNAL), error.description or error.name, status=status)
