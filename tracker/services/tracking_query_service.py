"""
Board & history readers - read-only projections over tracking state.

    load_state(tenant_id, application_id, for_update=False)
    get_application_state(tenant_id, application_id)         → state projection
    get_board(tenant_id, pipeline_id, status=None, job_id=None)
    get_history(tenant_id, application_id, limit, offset)
    get_decision_log(tenant_id, application_id, limit, offset, ...)

Stage ids in history / log rows are resolved to names with one batched
query per page, never per row.
"""

import logging

from sqlalchemy import func, select

from tracker.core.exceptions import ForbiddenError, NotFoundError
from tracker.models import db
from tracker.models.base import _iso
from tracker.models.pipeline import Application, Pipeline, PipelineStage
from tracker.models.tracking import (
    ActionExecutionLog,
    ApplicationPipelineState,
    ApplicationStageHistory,
)
from tracker.services.helpers.scoped_queries import get_scoped
from tracker.utils.helpers import normalize_code

logger = logging.getLogger(__name__)

TENANT_MISMATCH = "TENANT_MISMATCH"


# ── State ────────────────────────────────────────────────────────────────────


def load_state(tenant_id: int, application_id: str, *, for_update: bool = False) -> ApplicationPipelineState:
    """Fetch the live state row of an application.

    With ``for_update`` the row is read with SELECT ... FOR UPDATE and
    refreshed from the database, so the caller validates against the
    committed version it is about to overwrite.

    Raises:
        NotFoundError: the application has no state row.
        ForbiddenError: the state belongs to another tenant (TENANT_MISMATCH).
    """
    stmt = select(ApplicationPipelineState).where(
        ApplicationPipelineState.application_id == application_id
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    state = db.session.execute(stmt).scalar_one_or_none()
    if state is None:
        raise NotFoundError(
            resource="Application state",
            resource_id=application_id,
            message="Application is not attached to a pipeline",
        )
    if state.tenant_id != tenant_id:
        logger.warning(
            "Tenant mismatch on application %s (caller tenant=%s)", application_id, tenant_id,
            extra={"tenant_id": tenant_id},
        )
        raise ForbiddenError("Application belongs to a different tenant", code=TENANT_MISMATCH)
    return state


def get_application_state(tenant_id: int, application_id: str) -> dict:
    return load_state(tenant_id, application_id).to_dict()


def _stage_names(stage_ids) -> dict:
    ids = {sid for sid in stage_ids if sid}
    if not ids:
        return {}
    rows = db.session.execute(
        select(PipelineStage.id, PipelineStage.stage_name).where(PipelineStage.id.in_(ids))
    ).all()
    return {row.id: row.stage_name for row in rows}


def _pagination(total: int, limit: int, offset: int) -> dict:
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "hasMore": offset + limit < total,
    }


# ── Board ────────────────────────────────────────────────────────────────────


def get_board(tenant_id: int, pipeline_id: str, *, status: str | None = None,
              job_id: str | None = None) -> dict:
    """Kanban projection of a pipeline: every stage (empty ones included)
    with the tenant's applications currently sitting in it.
    """
    pipeline = db.session.get(Pipeline, pipeline_id)
    if pipeline is None or pipeline.is_deleted:
        raise NotFoundError(resource="Pipeline", resource_id=pipeline_id)
    if not pipeline.is_visible_to(tenant_id):
        raise ForbiddenError("Pipeline belongs to a different tenant", code=TENANT_MISMATCH)

    stmt = (
        select(ApplicationPipelineState, Application)
        .join(Application, Application.id == ApplicationPipelineState.application_id)
        .where(
            ApplicationPipelineState.tenant_id == tenant_id,
            ApplicationPipelineState.pipeline_id == pipeline_id,
        )
        .order_by(ApplicationPipelineState.entered_stage_at)
    )
    if status:
        stmt = stmt.where(ApplicationPipelineState.status == normalize_code(status, "status"))
    if job_id:
        stmt = stmt.where(Application.job_id == job_id)

    by_stage: dict[str, list] = {}
    for state, application in db.session.execute(stmt).all():
        by_stage.setdefault(state.current_stage_id, []).append({
            "applicationId": application.id,
            "jobId": application.job_id,
            "applicantName": application.applicant_name,
            "applicantEmail": application.applicant_email,
            "status": state.status,
            "outcomeType": state.outcome_type,
            "isTerminal": state.is_terminal,
            "enteredStageAt": _iso(state.entered_stage_at),
        })

    stages = []
    total = 0
    for stage in sorted(pipeline.stages, key=lambda s: s.order_index):
        apps = by_stage.get(stage.id, [])
        total += len(apps)
        stages.append({
            "stage": {
                "id": stage.id,
                "stageName": stage.stage_name,
                "stageType": stage.stage_type,
                "orderIndex": stage.order_index,
            },
            "applications": apps,
            "count": len(apps),
        })

    return {
        "pipelineId": pipeline.id,
        "pipelineName": pipeline.name,
        "stages": stages,
        "totalApplications": total,
    }


# ── History ──────────────────────────────────────────────────────────────────


def get_history(tenant_id: int, application_id: str, *, limit: int = 50, offset: int = 0) -> dict:
    """Reverse-chronological transition history of one application."""
    get_scoped(Application, application_id, tenant_id=tenant_id)

    base = select(ApplicationStageHistory).where(
        ApplicationStageHistory.tenant_id == tenant_id,
        ApplicationStageHistory.application_id == application_id,
    )
    total = db.session.execute(
        select(func.count()).select_from(base.subquery())
    ).scalar_one()
    rows = db.session.execute(
        base.order_by(ApplicationStageHistory.changed_at.desc(), ApplicationStageHistory.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()

    names = _stage_names([r.from_stage_id for r in rows] + [r.to_stage_id for r in rows])
    data = [
        {
            "id": r.id,
            "applicationId": r.application_id,
            "pipelineId": r.pipeline_id,
            "fromStageId": r.from_stage_id,
            "fromStageName": names.get(r.from_stage_id),
            "toStageId": r.to_stage_id,
            "toStageName": names.get(r.to_stage_id),
            "action": r.action,
            "changedBy": r.changed_by,
            "changedAt": _iso(r.changed_at),
            "reason": r.reason,
        }
        for r in rows
    ]
    return {"data": data, "pagination": _pagination(total, limit, offset)}


def get_decision_log(tenant_id: int, application_id: str, *, limit: int = 50, offset: int = 0,
                     outcome_type: str | None = None, action_code: str | None = None) -> dict:
    """Accountability log of one application, newest first."""
    get_scoped(Application, application_id, tenant_id=tenant_id)

    base = select(ActionExecutionLog).where(
        ActionExecutionLog.tenant_id == tenant_id,
        ActionExecutionLog.application_id == application_id,
    )
    if outcome_type:
        base = base.where(ActionExecutionLog.outcome_type == outcome_type.upper())
    if action_code:
        base = base.where(ActionExecutionLog.action_code == action_code.upper())

    total = db.session.execute(
        select(func.count()).select_from(base.subquery())
    ).scalar_one()
    rows = db.session.execute(
        base.order_by(ActionExecutionLog.executed_at.desc(), ActionExecutionLog.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()

    names = _stage_names(
        [r.stage_id for r in rows] + [r.from_stage_id for r in rows] + [r.to_stage_id for r in rows]
    )
    data = [
        {
            "id": r.id,
            "applicationId": r.application_id,
            "actionCode": r.action_code,
            "stageId": r.stage_id,
            "stageName": names.get(r.stage_id),
            "executedBy": r.executed_by,
            "executedAt": _iso(r.executed_at),
            "signalSnapshot": r.signal_snapshot or {},
            "conditionsEvaluated": r.conditions_evaluated or [],
            "decisionNote": r.decision_note,
            "overrideReason": r.override_reason,
            "reviewedBy": r.reviewed_by,
            "approvedBy": r.approved_by,
            "outcomeType": r.outcome_type,
            "isTerminal": r.is_terminal,
            "fromStageId": r.from_stage_id,
            "fromStageName": names.get(r.from_stage_id),
            "toStageId": r.to_stage_id,
            "toStageName": names.get(r.to_stage_id),
        }
        for r in rows
    ]
    return {"data": data, "pagination": _pagination(total, limit, offset)}
