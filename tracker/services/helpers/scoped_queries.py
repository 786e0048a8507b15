"""
Tenant-scoped query helpers.

Every get-by-id in the services goes through these helpers instead of
db.session.get(Model, pk): a bare primary-key lookup would let one tenant
read another tenant's rows.

Usage:
    application = get_scoped(Application, application_id, tenant_id=tenant_id)
    stage = get_scoped(PipelineStage, stage_id, pipeline_id=state.pipeline_id)
    status = get_scoped_or_none(TenantApplicationStatus, status_id, tenant_id=tenant_id)

Each keyword maps to a column on the model. A scope the model lacks is a
programming error and raises ValueError rather than silently running an
unscoped lookup.
"""

import logging

from sqlalchemy import select

from tracker.core.exceptions import NotFoundError
from tracker.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk, *, tenant_id: int | None = None, pipeline_id: str | None = None,
               resource: str | None = None):
    """Fetch a single entity by PK with a mandatory scope filter.

    Args:
        model: SQLAlchemy model class with an ``id`` column.
        pk: Primary key value to look up.
        tenant_id: Scope by tenant_id column.
        pipeline_id: Scope by pipeline_id column.
        resource: Name used in the NotFoundError message (defaults to the model name).

    Raises:
        ValueError: no scope given, or a scope column missing on the model.
        NotFoundError: the entity does not exist inside the scope.
    """
    scopes = {
        field: value
        for field, value in (("tenant_id", tenant_id), ("pipeline_id", pipeline_id))
        if value is not None
    }
    if not scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires a scope filter (tenant_id or pipeline_id)"
        )
    missing = [field for field in scopes if not hasattr(model, field)]
    if missing:
        raise ValueError(f"{model.__name__} has no scope column(s) {sorted(missing)}")

    stmt = select(model).where(model.id == pk)
    for field, value in scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, scopes)
        raise NotFoundError(resource=resource or model.__name__, resource_id=pk)
    return result


def get_scoped_or_none(model, pk, *, tenant_id: int | None = None, pipeline_id: str | None = None):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    try:
        return get_scoped(model, pk, tenant_id=tenant_id, pipeline_id=pipeline_id)
    except NotFoundError:
        return None
