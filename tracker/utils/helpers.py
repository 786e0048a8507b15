"""Shared request-parsing helpers used by the blueprints.

require_uuid:       path / body id validation (raises ValidationError)
pagination_args:    limit / offset from the query string, clamped
parse_bool:         tolerant boolean parsing for query params and JSON bodies
normalize_code:     status / action code normalisation
"""

import re
import uuid

from flask import request

from tracker.core.exceptions import ValidationError

_CODE_STRIP = re.compile(r"[^A-Z0-9_]")
_WHITESPACE = re.compile(r"\s+")

CODE_MIN_LEN = 2
CODE_MAX_LEN = 50


def is_valid_uuid(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def require_uuid(value, label: str = "id") -> str:
    """Return ``value`` if it is a well-formed UUID string, else raise ValidationError."""
    if not is_valid_uuid(value):
        raise ValidationError(f"Invalid {label} format")
    return value


def pagination_args(default_limit=50, max_limit=100):
    """Read ``limit`` / ``offset`` from the query string.

    Bad values fall back to the defaults; limit is clamped to [1, max_limit]
    and offset to >= 0.
    """
    try:
        limit = int(request.args.get("limit", default_limit))
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = int(request.args.get("offset", 0))
    except (ValueError, TypeError):
        offset = 0
    return max(1, min(limit, max_limit)), max(offset, 0)


def parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def normalize_code(raw, label: str = "code") -> str:
    """Normalise a status / action code.

    Uppercases, turns whitespace runs into ``_``, strips everything outside
    ``[A-Z0-9_]`` and enforces a 2-50 character length.

    Raises:
        ValidationError: empty input or length out of range after normalising.
    """
    if raw is None or not str(raw).strip():
        raise ValidationError(f"{label} is required")
    code = _WHITESPACE.sub("_", str(raw).strip().upper())
    code = _CODE_STRIP.sub("", code)
    if not CODE_MIN_LEN <= len(code) <= CODE_MAX_LEN:
        raise ValidationError(
            f"{label} must be {CODE_MIN_LEN}-{CODE_MAX_LEN} characters (A-Z, 0-9, underscore)"
        )
    return code
