"""
JWT Auth Middleware - parses the Bearer token, sets g.jwt_*.

Does not block on its own: a missing or invalid token leaves the context
empty and the auth guard (tracker.auth) decides whether the route needs an
identity.

    g.jwt_user_id, g.jwt_tenant_id, g.jwt_roles, g.jwt_error
"""

import logging

import jwt as pyjwt
from flask import g, request

from tracker.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []
        g.jwt_error = None

        path = request.path
        if not path.startswith("/api/v1/") or path.startswith(JWT_SKIP_PREFIXES):
            return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            g.jwt_error = "Token has expired"
            return
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected bearer token: %s", exc)
            g.jwt_error = "Invalid token"
            return

        g.jwt_user_id = payload["sub"]
        g.jwt_tenant_id = payload.get("tenant_id")
        g.jwt_roles = payload.get("roles", [])
