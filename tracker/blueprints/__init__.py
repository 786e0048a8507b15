"""
ATS Pipeline Tracker
Blueprint registry and request-context helpers shared by the route modules.
"""

from flask import g, request

from tracker.core.exceptions import ValidationError
from tracker.services.capability_service import resolve_capabilities


def json_body() -> dict:
    """The JSON object body of the request; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def current_tenant_id() -> int:
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id is None:
        raise ValidationError("tenant_id is required")
    return tenant_id


def current_user_id() -> int | None:
    user = getattr(g, "current_user", None)
    return user.id if user is not None else None


def current_capabilities() -> set[str]:
    """Capabilities of the caller's role, resolved from the tenant's RoleCapability rows."""
    return resolve_capabilities(current_tenant_id(), getattr(g, "caller_role", None))
