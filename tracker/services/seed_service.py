"""
Default catalog seeding for a tenant.

Run on tenant onboarding (or via ``flask seed-tracking-defaults``). Every
seeder is idempotent: rows that already exist are left untouched.

Seeders only add to the session; the caller commits.
"""

import logging

from tracker.models import db
from tracker.models.auth import RoleCapability
from tracker.models.pipeline import Pipeline, PipelineStage
from tracker.models.tracking import (
    OUTCOME_ACTIVE,
    OUTCOME_FAILURE,
    OUTCOME_HOLD,
    OUTCOME_NEUTRAL,
    OUTCOME_SUCCESS,
    TenantApplicationStatus,
    TenantStageAction,
)

logger = logging.getLogger(__name__)

# (status_code, display_name, action_code, outcome_type, is_terminal, sort_order, color)
DEFAULT_STATUSES = (
    ("ACTIVE", "Active", "ACTIVATE", OUTCOME_ACTIVE, False, 10, "#22C55E"),
    ("ON_HOLD", "On Hold", "HOLD", OUTCOME_HOLD, False, 20, "#F59E0B"),
    ("HIRED", "Hired", "HIRE", OUTCOME_SUCCESS, True, 30, "#3B82F6"),
    ("REJECTED", "Rejected", "REJECT", OUTCOME_FAILURE, True, 40, "#EF4444"),
    ("WITHDRAWN", "Withdrawn", "WITHDRAW", OUTCOME_NEUTRAL, True, 50, "#6B7280"),
)

DEFAULT_CAPABILITIES = {
    "SUPERADMIN": ("pipeline:*",),
    "ADMIN": ("pipeline:*",),
    "HR": (
        "pipeline:advance",
        "pipeline:reject",
        "pipeline:hold",
        "pipeline:hire",
        "pipeline:feedback",
        "pipeline:view",
    ),
    "INTERVIEWER": ("pipeline:feedback", "pipeline:view"),
}

_DECISION_STAGE_TYPES = frozenset({"decision", "offer"})


def seed_default_statuses(tenant_id: int) -> int:
    existing = {
        row.status_code
        for row in TenantApplicationStatus.query_for_tenant(tenant_id).all()
    }
    created = 0
    for code, name, action, outcome, terminal, sort_order, color in DEFAULT_STATUSES:
        if code in existing:
            continue
        db.session.add(TenantApplicationStatus(
            tenant_id=tenant_id,
            status_code=code,
            display_name=name,
            action_code=action,
            outcome_type=outcome,
            is_terminal=terminal,
            sort_order=sort_order,
            color_hex=color,
        ))
        created += 1
    return created


def seed_default_capabilities(tenant_id: int) -> int:
    existing = {
        (row.role_name, row.capability)
        for row in RoleCapability.query_for_tenant(tenant_id).all()
    }
    created = 0
    for role, capabilities in DEFAULT_CAPABILITIES.items():
        for capability in capabilities:
            if (role, capability) in existing:
                continue
            db.session.add(RoleCapability(tenant_id=tenant_id, role_name=role, capability=capability))
            created += 1
    return created


def _default_actions_for(stage: PipelineStage, is_last: bool) -> list[dict]:
    actions = []
    if not is_last:
        actions.append(dict(
            action_code="ADVANCE", display_name="Advance", outcome_type=None,
            moves_to_next_stage=True, required_capability="pipeline:advance",
            requires_feedback=stage.stage_type == "interview", sort_order=10,
        ))
    actions.extend([
        dict(action_code="REJECT", display_name="Reject", outcome_type=OUTCOME_FAILURE,
             is_terminal=True, requires_notes=True, required_capability="pipeline:reject",
             sort_order=90),
        dict(action_code="HOLD", display_name="Put on hold", outcome_type=OUTCOME_HOLD,
             required_capability="pipeline:hold", sort_order=70),
        dict(action_code="ACTIVATE", display_name="Reactivate", outcome_type=OUTCOME_ACTIVE,
             required_capability="pipeline:hold", sort_order=80),
    ])
    if stage.stage_type in _DECISION_STAGE_TYPES:
        actions.append(dict(
            action_code="HIRE", display_name="Hire", outcome_type=OUTCOME_SUCCESS,
            is_terminal=True, required_capability="pipeline:hire", sort_order=20,
        ))
    return actions


def seed_default_stage_actions(tenant_id: int, pipeline: Pipeline) -> int:
    """Default actions for every stage of ``pipeline``."""
    stages = sorted(pipeline.stages, key=lambda s: s.order_index)
    existing = {
        (row.stage_id, row.action_code)
        for row in TenantStageAction.query_for_tenant(tenant_id)
        .filter(TenantStageAction.stage_id.in_([s.id for s in stages]))
        .all()
    }
    created = 0
    for idx, stage in enumerate(stages):
        for spec in _default_actions_for(stage, is_last=idx == len(stages) - 1):
            if (stage.id, spec["action_code"]) in existing:
                continue
            db.session.add(TenantStageAction(tenant_id=tenant_id, stage_id=stage.id, **spec))
            created += 1
    return created


def seed_tenant_defaults(tenant_id: int) -> dict:
    """Seed statuses, capabilities and the actions of every visible pipeline."""
    counts = {
        "statuses": seed_default_statuses(tenant_id),
        "capabilities": seed_default_capabilities(tenant_id),
        "actions": 0,
    }
    pipelines = Pipeline.query.filter(
        (Pipeline.tenant_id == tenant_id) | (Pipeline.tenant_id.is_(None)),
        Pipeline.is_deleted.is_(False),
    ).all()
    for pipeline in pipelines:
        counts["actions"] += seed_default_stage_actions(tenant_id, pipeline)
    logger.info("Seeded tracking defaults %s", counts, extra={"tenant_id": tenant_id})
    return counts
