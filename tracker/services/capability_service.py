"""
Capability resolver.

Maps (tenant, role) to the set of capability strings held by the role and
answers "does this set satisfy capability X". Pure lookup: no caching between
requests and no business rules.

Matching:
    exact               "pipeline:hire" satisfies "pipeline:hire"
    namespace wildcard  "pipeline:*"    satisfies "pipeline:hire"

Usage:
    from tracker.services.capability_service import resolve_capabilities, has_capability

    caps = resolve_capabilities(tenant_id, "HR")
    if not has_capability(caps, action.required_capability):
        ...
"""

from sqlalchemy import func, select

from tracker.models import db
from tracker.models.auth import RoleCapability

WILDCARD = "*"


def resolve_capabilities(tenant_id: int, role_name: str | None) -> set[str]:
    """Return the union of the role's capability rows inside the tenant."""
    if not role_name:
        return set()
    stmt = select(RoleCapability.capability).where(
        RoleCapability.tenant_id == tenant_id,
        func.upper(RoleCapability.role_name) == role_name.upper(),
    )
    return set(db.session.execute(stmt).scalars().all())


def has_capability(capabilities, required: str | None) -> bool:
    """True when ``capabilities`` satisfies ``required``.

    An action with no required capability is open to every caller.
    """
    if not required:
        return True
    if required in capabilities:
        return True
    namespace, sep, _ = required.partition(":")
    return bool(sep) and f"{namespace}:{WILDCARD}" in capabilities


def list_capabilities_by_role(tenant_id: int) -> list[dict]:
    """Capability rows of the tenant grouped by role.

    Returns:
        [{"roleName": "ADMIN", "capabilities": ["pipeline:*"]}, ...]
        sorted by role name, capabilities sorted within each role.
    """
    rows = (
        RoleCapability.query_for_tenant(tenant_id)
        .order_by(RoleCapability.role_name, RoleCapability.capability)
        .all()
    )
    grouped: dict[str, list[str]] = {}
    for row in rows:
        grouped.setdefault(row.role_name, []).append(row.capability)
    return [{"roleName": role, "capabilities": caps} for role, caps in grouped.items()]
