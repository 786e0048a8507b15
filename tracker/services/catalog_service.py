"""
Status & action catalog service.

Tenant-owned configuration of legal status codes and stage actions, with the
referential-integrity guards that protect live application states:

  - a status cannot be soft-deleted while a live state uses it
  - a terminal status cannot be made non-terminal while a live state uses it

Every function takes tenant_id explicitly and commits its own writes
(blueprints never touch db.session).

Raises (from tracker.core.exceptions):
    ValidationError - bad code / enum / payload
    ConflictError   - duplicate code within the tenant (or stage)
    ForbiddenError  - guarded change on a status in use
    NotFoundError   - row absent in the tenant
"""

import logging
import re

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tracker.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.pipeline import PipelineStage
from tracker.models.tracking import (
    OUTCOME_NEUTRAL,
    OUTCOME_TYPES,
    ApplicationPipelineState,
    TenantApplicationStatus,
    TenantStageAction,
)
from tracker.services.helpers.scoped_queries import get_scoped
from tracker.services.signal_conditions import validate_signal_conditions
from tracker.utils.helpers import normalize_code, parse_bool

logger = logging.getLogger(__name__)

_COLOR_HEX = re.compile(r"^#[0-9A-Fa-f]{6}$")
DEFAULT_SORT_ORDER = 99


# ── Field validators ─────────────────────────────────────────────────────────


def _outcome_type(value, *, allow_none=False):
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_none:
            return None
        raise ValidationError("outcome_type is required")
    outcome = str(value).strip().upper()
    if outcome not in OUTCOME_TYPES:
        raise ValidationError(
            f"Invalid outcome_type '{value}'. Must be one of: {', '.join(sorted(OUTCOME_TYPES))}"
        )
    return outcome


def _display_name(value, label="display_name"):
    name = (value or "").strip() if isinstance(value, str) else ""
    if not name:
        raise ValidationError(f"{label} is required")
    if len(name) > 100:
        raise ValidationError(f"{label} must be at most 100 characters")
    return name


def _sort_order(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("sort_order must be an integer")


def _color_hex(value):
    if value in (None, ""):
        return None
    if not isinstance(value, str) or not _COLOR_HEX.match(value):
        raise ValidationError("color_hex must look like #RRGGBB")
    return value.upper()


def _first(data: dict, *keys):
    """First present key of ``data`` (accepts snake_case and camelCase)."""
    for key in keys:
        if key in data:
            return True, data[key]
    return False, None


# ═════════════════════════════════════════════════════════════════════════════
# Statuses
# ═════════════════════════════════════════════════════════════════════════════


def count_states_using_status(tenant_id: int, status_code: str) -> int:
    """Live application states of the tenant currently carrying ``status_code``."""
    stmt = select(func.count(ApplicationPipelineState.id)).where(
        ApplicationPipelineState.tenant_id == tenant_id,
        ApplicationPipelineState.status == status_code,
    )
    return db.session.execute(stmt).scalar_one()


def list_statuses(tenant_id: int) -> list[dict]:
    rows = (
        TenantApplicationStatus.query_for_tenant(tenant_id)
        .filter_by(is_active=True)
        .order_by(TenantApplicationStatus.sort_order, TenantApplicationStatus.status_code)
        .all()
    )
    return [row.to_dict() for row in rows]


def find_status(tenant_id: int, status_code: str, *, active_only=True):
    query = TenantApplicationStatus.query_for_tenant(tenant_id).filter_by(status_code=status_code)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.first()


def create_status(tenant_id: int, data: dict) -> dict:
    """Create a status code for the tenant.

    A soft-deleted row with the same code is reactivated with the new values
    instead of failing the uniqueness constraint.
    """
    status_code = normalize_code(_first(data, "status_code", "statusCode")[1], "status_code")
    display_name = _display_name(_first(data, "display_name", "displayName")[1])

    has_action, raw_action = _first(data, "action_code", "actionCode")
    action_code = normalize_code(raw_action, "action_code") if has_action and raw_action else status_code

    has_outcome, raw_outcome = _first(data, "outcome_type", "outcomeType")
    outcome_type = _outcome_type(raw_outcome) if has_outcome and raw_outcome else OUTCOME_NEUTRAL

    has_sort, raw_sort = _first(data, "sort_order", "sortOrder")
    sort_order = _sort_order(raw_sort) if has_sort and raw_sort is not None else DEFAULT_SORT_ORDER

    is_terminal = parse_bool(_first(data, "is_terminal", "isTerminal")[1])
    color_hex = _color_hex(_first(data, "color_hex", "colorHex")[1])

    existing = find_status(tenant_id, status_code, active_only=False)
    if existing is not None and existing.is_active:
        raise ConflictError(resource="Status", field="status_code", value=status_code,
                            message=f"Status code '{status_code}' already exists")

    row = existing or TenantApplicationStatus(tenant_id=tenant_id, status_code=status_code)
    row.display_name = display_name
    row.action_code = action_code
    row.outcome_type = outcome_type
    row.is_terminal = is_terminal
    row.sort_order = sort_order
    row.color_hex = color_hex
    row.is_active = True
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(resource="Status", field="status_code", value=status_code,
                            message=f"Status code '{status_code}' already exists")

    logger.info("Status created code=%s", status_code, extra={"tenant_id": tenant_id})
    return row.to_dict()


def update_status(tenant_id: int, status_id: str, data: dict) -> dict:
    """Partially update a status.

    Raises:
        ForbiddenError: making a terminal status non-terminal while live
            application states use it.
    """
    row = get_scoped(TenantApplicationStatus, status_id, tenant_id=tenant_id, resource="Status")
    if not row.is_active:
        raise NotFoundError(resource="Status", resource_id=status_id)

    try:
        _apply_status_fields(tenant_id, row, data)
    except Exception:
        db.session.rollback()
        raise

    db.session.commit()
    logger.info("Status updated code=%s", row.status_code, extra={"tenant_id": tenant_id})
    return row.to_dict()


def _apply_status_fields(tenant_id: int, row: TenantApplicationStatus, data: dict):
    present, value = _first(data, "display_name", "displayName")
    if present:
        row.display_name = _display_name(value)

    present, value = _first(data, "action_code", "actionCode")
    if present:
        row.action_code = normalize_code(value, "action_code")

    present, value = _first(data, "outcome_type", "outcomeType")
    if present:
        row.outcome_type = _outcome_type(value)

    present, value = _first(data, "sort_order", "sortOrder")
    if present:
        row.sort_order = _sort_order(value)

    present, value = _first(data, "color_hex", "colorHex")
    if present:
        row.color_hex = _color_hex(value)

    present, value = _first(data, "is_terminal", "isTerminal")
    if present:
        new_terminal = parse_bool(value)
        if row.is_terminal and not new_terminal:
            in_use = count_states_using_status(tenant_id, row.status_code)
            if in_use:
                raise ForbiddenError(
                    f"Cannot make status '{row.status_code}' non-terminal: "
                    f"it is currently used by {in_use} application(s)",
                    details=f"{in_use} application(s) use this status",
                )
        row.is_terminal = new_terminal


def delete_status(tenant_id: int, status_id: str) -> dict:
    """Soft-delete a status (is_active=False).

    Raises:
        ForbiddenError: a live application state uses the status code.
    """
    row = get_scoped(TenantApplicationStatus, status_id, tenant_id=tenant_id, resource="Status")
    if not row.is_active:
        raise NotFoundError(resource="Status", resource_id=status_id)

    in_use = count_states_using_status(tenant_id, row.status_code)
    if in_use:
        raise ForbiddenError(
            f"Cannot delete status '{row.status_code}': it is currently used by {in_use} application(s)",
            details=f"{in_use} application(s) use this status",
        )

    row.is_active = False
    db.session.commit()
    logger.info("Status deactivated code=%s", row.status_code, extra={"tenant_id": tenant_id})
    return row.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Stage actions
# ═════════════════════════════════════════════════════════════════════════════


def _visible_stage(tenant_id: int, stage_id) -> PipelineStage:
    """A stage whose pipeline is global or owned by the tenant."""
    stage = db.session.get(PipelineStage, stage_id) if isinstance(stage_id, str) else None
    if stage is None or stage.pipeline is None or not stage.pipeline.is_visible_to(tenant_id):
        raise NotFoundError(resource="Stage", resource_id=stage_id)
    return stage


def list_stage_actions(tenant_id: int, *, stage_id: str | None = None,
                       pipeline_id: str | None = None) -> list[dict]:
    """Active stage actions of the tenant with their stage info."""
    stmt = (
        select(TenantStageAction)
        .join(PipelineStage, PipelineStage.id == TenantStageAction.stage_id)
        .where(
            TenantStageAction.tenant_id == tenant_id,
            TenantStageAction.is_active.is_(True),
        )
    )
    if stage_id:
        stmt = stmt.where(TenantStageAction.stage_id == stage_id)
    if pipeline_id:
        stmt = stmt.where(PipelineStage.pipeline_id == pipeline_id)
    stmt = stmt.order_by(
        PipelineStage.pipeline_id,
        PipelineStage.order_index,
        TenantStageAction.sort_order,
        TenantStageAction.action_code,
    )
    return [row.to_dict() for row in db.session.execute(stmt).scalars().all()]


def active_actions_for_stage(tenant_id: int, stage_id: str) -> list[TenantStageAction]:
    stmt = (
        select(TenantStageAction)
        .where(
            TenantStageAction.tenant_id == tenant_id,
            TenantStageAction.stage_id == stage_id,
            TenantStageAction.is_active.is_(True),
        )
        .order_by(TenantStageAction.sort_order, TenantStageAction.action_code)
    )
    return db.session.execute(stmt).scalars().all()


def find_stage_action(tenant_id: int, stage_id: str, action_code: str, *, active_only=True):
    stmt = select(TenantStageAction).where(
        TenantStageAction.tenant_id == tenant_id,
        TenantStageAction.stage_id == stage_id,
        TenantStageAction.action_code == action_code,
    )
    if active_only:
        stmt = stmt.where(TenantStageAction.is_active.is_(True))
    return db.session.execute(stmt).scalar_one_or_none()


def _apply_action_fields(row: TenantStageAction, data: dict, *, creating: bool):
    present, value = _first(data, "display_name", "displayName")
    if present or creating:
        row.display_name = _display_name(value)

    present, value = _first(data, "outcome_type", "outcomeType")
    if present:
        row.outcome_type = _outcome_type(value, allow_none=True)

    for attr, keys in (
        ("moves_to_next_stage", ("moves_to_next_stage", "movesToNextStage")),
        ("is_terminal", ("is_terminal", "isTerminal")),
        ("requires_feedback", ("requires_feedback", "requiresFeedback")),
        ("requires_notes", ("requires_notes", "requiresNotes")),
        ("is_active", ("is_active", "isActive")),
    ):
        present, value = _first(data, *keys)
        if present:
            setattr(row, attr, parse_bool(value))

    present, value = _first(data, "required_capability", "requiredCapability")
    if present:
        row.required_capability = (str(value).strip() or None) if value is not None else None

    present, value = _first(data, "signal_conditions", "signalConditions")
    if present:
        row.signal_conditions = validate_signal_conditions(value)

    present, value = _first(data, "sort_order", "sortOrder")
    if present and value is not None:
        row.sort_order = _sort_order(value)


def _reset_action_fields(row: TenantStageAction):
    """Configurable fields back to their column defaults."""
    row.outcome_type = None
    row.moves_to_next_stage = False
    row.is_terminal = False
    row.requires_feedback = False
    row.requires_notes = False
    row.required_capability = None
    row.signal_conditions = None
    row.sort_order = 0


def create_stage_action(tenant_id: int, data: dict) -> dict:
    """Configure a new action on a stage of a pipeline visible to the tenant."""
    stage = _visible_stage(tenant_id, _first(data, "stage_id", "stageId")[1])
    action_code = normalize_code(_first(data, "action_code", "actionCode")[1], "action_code")

    existing = find_stage_action(tenant_id, stage.id, action_code, active_only=False)
    if existing is not None and existing.is_active:
        raise ConflictError(resource="Stage action", field="action_code", value=action_code,
                            message=f"Action '{action_code}' already exists on this stage")

    row = existing or TenantStageAction(tenant_id=tenant_id, stage_id=stage.id, action_code=action_code)
    try:
        if existing is not None:
            _reset_action_fields(row)
        _apply_action_fields(row, data, creating=True)
    except Exception:
        db.session.rollback()
        raise
    row.is_active = True
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(resource="Stage action", field="action_code", value=action_code,
                            message=f"Action '{action_code}' already exists on this stage")

    logger.info("Stage action created code=%s stage=%s", action_code, stage.id,
                extra={"tenant_id": tenant_id})
    return row.to_dict()


def update_stage_action(tenant_id: int, action_id: str, data: dict) -> dict:
    row = get_scoped(TenantStageAction, action_id, tenant_id=tenant_id, resource="Stage action")
    try:
        _apply_action_fields(row, data, creating=False)
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("Stage action updated code=%s", row.action_code, extra={"tenant_id": tenant_id})
    return row.to_dict()
