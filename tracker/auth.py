"""
ATS Pipeline Tracker
Authentication guard and role gates.

Provides:
    - Service authentication via the X-API-Key header (SERVICE_API_KEYS);
      used by the ingestion pipeline to attach applications
    - The request guard: every /api/v1/* route except health needs either
      a resolved user (see middleware/tenant_context.py) or a service key
    - require_roles decorator for HTTP role gates

Configuration:
    SERVICE_API_KEYS - comma-separated list of accepted service keys
"""

import functools
import hmac
import logging

from flask import current_app, g, request

from tracker.models.auth import ROLE_ADMIN, ROLE_HR, ROLE_SUPERADMIN
from tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── Role groups ──────────────────────────────────────────────────────────────

TRACKING_WRITERS = (ROLE_ADMIN, ROLE_HR, ROLE_SUPERADMIN)
SETTINGS_WRITERS = (ROLE_ADMIN, ROLE_SUPERADMIN)

AUTH_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _valid_service_key(key: str) -> bool:
    return any(hmac.compare_digest(key, k) for k in current_app.config.get("SERVICE_API_KEYS", ()))


def init_auth(app):
    """Register the authentication guard. Must run after tenant context."""

    @app.before_request
    def _require_identity():
        g.is_service_call = False

        path = request.path
        if not path.startswith("/api/v1/") or path.startswith(AUTH_SKIP_PREFIXES):
            return None
        if request.method == "OPTIONS":
            return None

        api_key = request.headers.get("X-API-Key", "").strip()
        if api_key:
            if not _valid_service_key(api_key):
                logger.warning("Invalid service key attempt: %s...", api_key[:6])
                return api_error(E.UNAUTHORIZED, "Invalid API key")
            g.is_service_call = True
            return None

        if getattr(g, "current_user", None) is None:
            message = getattr(g, "jwt_error", None) or "Authentication required"
            return api_error(E.UNAUTHORIZED, message)
        return None


def require_roles(*roles, allow_service: bool = False):
    """
    Decorator: require the caller's role to be one of ``roles``.

    Usage:
        @tracking_bp.route("/applications/<app_id>/act", methods=["POST"])
        @require_roles(*TRACKING_WRITERS)
        def act(app_id): ...

    Service-key callers pass only where ``allow_service`` is set.
    """
    allowed = {r.upper() for r in roles}

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if getattr(g, "is_service_call", False):
                if allow_service:
                    return f(*args, **kwargs)
                return api_error(E.FORBIDDEN, "Service callers may not use this endpoint")

            role = getattr(g, "caller_role", None)
            if not role:
                return api_error(E.UNAUTHORIZED, "Authentication required")
            if allowed and role not in allowed:
                logger.warning(
                    "Access denied: role '%s' on %s %s", role, request.method, request.path,
                    extra={"tenant_id": getattr(g, "tenant_id", None)},
                )
                return api_error(E.FORBIDDEN, "Insufficient permissions")
            return f(*args, **kwargs)
        return decorated
    return decorator
