"""
Tenant Context Middleware - resolves the caller and its tenant.

When a JWT-authenticated user makes a request:
  1. g.jwt_user_id / g.jwt_tenant_id are already set by jwt_auth
  2. the User row is loaded; it must exist, be active and belong to the
     token's tenant, and that tenant must be active
  3. g.current_user, g.tenant_id, g.tenant and g.caller_role are set; the
     role always comes from the database, never from the token

A SUPERADMIN may act on another tenant by sending X-Tenant-ID.

Chain order:
  jwt_auth.py  →  tenant_context.py  →  auth.py guard  →  route handler
"""

import logging

from flask import g, request

from tracker.models import db
from tracker.models.auth import ROLE_SUPERADMIN, Tenant, User
from tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.current_user = None
        g.tenant = None
        g.tenant_id = None
        g.caller_role = None

        if not request.path.startswith("/api/v1/") or request.path.startswith(TENANT_SKIP_PREFIXES):
            return None

        user_id = getattr(g, "jwt_user_id", None)
        if user_id is None:
            return None

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.warning("JWT user %s not found or inactive", user_id)
            return api_error(E.UNAUTHORIZED, "User not found or inactive")
        if g.jwt_tenant_id is not None and g.jwt_tenant_id != user.tenant_id:
            logger.warning("JWT tenant %s does not match user %s", g.jwt_tenant_id, user_id)
            return api_error(E.UNAUTHORIZED, "Token tenant does not match user")

        tenant = db.session.get(Tenant, user.tenant_id)
        if tenant is None or not tenant.is_active:
            logger.warning("Tenant %s missing or deactivated", user.tenant_id)
            return api_error(E.FORBIDDEN, "Tenant account is deactivated")

        role = (user.role or "").upper()
        override = request.headers.get("X-Tenant-ID", "").strip()
        if override and role == ROLE_SUPERADMIN:
            target = db.session.get(Tenant, int(override)) if override.isdigit() else None
            if target is None:
                return api_error(E.NOT_FOUND, "Tenant not found")
            tenant = target
            logger.info("Superadmin %s acting on tenant %s", user.id, tenant.id,
                        extra={"tenant_id": tenant.id})

        g.current_user = user
        g.tenant = tenant
        g.tenant_id = tenant.id
        g.caller_role = role
        return None

    logger.debug("Tenant context middleware installed")
