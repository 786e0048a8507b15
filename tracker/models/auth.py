"""
Identity models - Tenant, User, RoleCapability.

Tenants and users are provisioned by the account service; this service only
reads them to scope requests and to resolve the caller's role. RoleCapability
rows are the capability feed: a role's effective capability set is the union
of its rows for the tenant.
"""

from tracker.models import db
from tracker.models.base import TenantModel, _iso, _utcnow

# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_SUPERADMIN = "SUPERADMIN"
ROLE_ADMIN = "ADMIN"
ROLE_HR = "HR"
ROLE_INTERVIEWER = "INTERVIEWER"

KNOWN_ROLES = frozenset({ROLE_SUPERADMIN, ROLE_ADMIN, ROLE_HR, ROLE_INTERVIEWER})


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════

class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(50), nullable=False, default=ROLE_HR)
    status = db.Column(db.String(20), default="active")  # active, invited, inactive
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    # Same email can exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_id", "tenant_id"),
    )

    tenant = db.relationship("Tenant", back_populates="users")

    @property
    def is_active(self):
        return self.status == "active"

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════
# 3. ROLE CAPABILITIES
# ═══════════════════════════════════════════════════════════════

class RoleCapability(TenantModel):
    """One (role, capability) grant inside a tenant.

    Capabilities are namespaced strings (``pipeline:hire``). A row holding
    ``pipeline:*`` grants every capability of the ``pipeline`` namespace.
    """

    __tablename__ = "role_capabilities"
    __table_args__ = (
        db.UniqueConstraint(
            "tenant_id", "role_name", "capability", name="uq_role_capability",
        ),
        db.Index("ix_role_capabilities_tenant_role", "tenant_id", "role_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    role_name = db.Column(db.String(50), nullable=False)
    capability = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "role_name": self.role_name,
            "capability": self.capability,
        }
