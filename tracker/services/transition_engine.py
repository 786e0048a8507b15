"""
Transition engine - the only writer of ApplicationPipelineState.

Every mutating entry point runs one read-validate-write unit:

    1. lock the state row (SELECT ... FOR UPDATE)
    2. run every gate; any failure raises before anything is written
    3. update state + append one history row + one execution-log row
    4. commit (or roll back the whole unit)

Entry points:
    attach_application(tenant_id, application_id, pipeline_id=None, actor_id=None)
    execute_action(tenant_id, application_id, action_code, actor_id=..., capabilities=...)
    move_application(tenant_id, application_id, to_stage_id=..., actor_id=...)
    update_application_status(tenant_id, application_id, status_code=..., actor_id=...)
    get_state(tenant_id, application_id)

The state row carries a version counter (mapper version_id_col). A writer
that lost a race fails its UPDATE with StaleDataError; the unit is rolled
back and re-run once against the fresh row, so gates are always checked
against the state actually being overwritten.
"""

import logging

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from tracker.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from tracker.models import db
from tracker.models.auth import User
from tracker.models.base import _utcnow
from tracker.models.pipeline import Application, Pipeline, PipelineAssignment, PipelineStage
from tracker.models.tracking import (
    HISTORY_ACTION_MOVE,
    LOG_ACTION_ATTACH,
    OUTCOME_ACTIVE,
    OUTCOME_HOLD,
    ActionExecutionLog,
    ApplicationPipelineState,
    ApplicationStageHistory,
    TenantApplicationStatus,
)
from tracker.services import catalog_service, evaluation_service, signal_service
from tracker.services.capability_service import has_capability
from tracker.services.helpers.scoped_queries import get_scoped
from tracker.services.signal_conditions import (
    describe_failures,
    evaluate_signal_conditions,
    has_warnings,
    log_view,
)
from tracker.services.tracking_query_service import TENANT_MISMATCH, load_state
from tracker.utils.helpers import normalize_code

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

TERMINAL_STATUS = "TERMINAL_STATUS"
EVALUATIONS_INCOMPLETE = "EVALUATIONS_INCOMPLETE"
SIGNALS_NOT_MET = "SIGNALS_NOT_MET"
FEEDBACK_REQUIRED = "FEEDBACK_REQUIRED"
INVALID_STATUS = "INVALID_STATUS"
INVALID_STAGE = "INVALID_STAGE"

ATTACH_REASON = "Application attached to pipeline"
FALLBACK_STATUS = "ACTIVE"


# ── Shared rules ─────────────────────────────────────────────────────────────


def hold_guard_allows(action_outcome: str | None, current_outcome: str | None) -> bool:
    """HOLD is only offered to ACTIVE applications and ACTIVE (resume) only to
    HOLD ones. Other outcomes are unconstrained."""
    if action_outcome == OUTCOME_HOLD:
        return current_outcome == OUTCOME_ACTIVE
    if action_outcome == OUTCOME_ACTIVE:
        return current_outcome == OUTCOME_HOLD
    return True


def _clean(text, label: str) -> str | None:
    if text is None:
        return None
    if not isinstance(text, str):
        raise ValidationError(f"{label} must be a string")
    return text.strip() or None


def _log_extra(tenant_id: int, application_id: str, action_code: str | None = None) -> dict:
    return {"tenant_id": tenant_id, "application_id": application_id, "action_code": action_code}


def _ensure_not_terminal(state: ApplicationPipelineState):
    if state.is_terminal:
        raise ForbiddenError(
            f"Application is in terminal status '{state.status}'; no further transitions are allowed",
            code=TERMINAL_STATUS,
        )


def _tenant_user(tenant_id: int, user_id, label: str) -> int | None:
    if user_id in (None, ""):
        return None
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a user id")
    user = db.session.get(User, uid)
    if user is None or user.tenant_id != tenant_id:
        raise ValidationError(f"{label} must reference a user of this tenant")
    return uid


def _run(work, *, tenant_id: int, application_id: str, conflict_message: str | None = None) -> dict:
    """Run ``work`` and commit; retry once when a concurrent writer won."""
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            state = work()
            db.session.commit()
            return state.to_dict()
        except StaleDataError:
            db.session.rollback()
            if attempt == MAX_ATTEMPTS:
                logger.warning(
                    "Transition lost the race twice app=%s", application_id,
                    extra=_log_extra(tenant_id, application_id),
                )
                raise ConflictError(
                    resource="Application state",
                    field="version",
                    message="Application was modified concurrently; retry the request",
                )
            logger.info(
                "Concurrent update on app=%s, retrying", application_id,
                extra=_log_extra(tenant_id, application_id),
            )
        except IntegrityError:
            db.session.rollback()
            if conflict_message is None:
                raise
            raise ConflictError(
                resource="Application state",
                field="application_id",
                value=application_id,
                message=conflict_message,
            )
        except Exception:
            db.session.rollback()
            raise


def _append_audit(
    state: ApplicationPipelineState,
    *,
    action_code: str,
    history_action: str,
    from_stage_id: str | None,
    actor_id: int | None,
    changed_at,
    reason: str | None = None,
    signal_snapshot: dict | None = None,
    conditions_evaluated: list | None = None,
    decision_note: str | None = None,
    override_reason: str | None = None,
    reviewed_by: int | None = None,
    approved_by: int | None = None,
):
    """One history row and one execution-log row for a committed transition."""
    db.session.add(ApplicationStageHistory(
        tenant_id=state.tenant_id,
        application_id=state.application_id,
        pipeline_id=state.pipeline_id,
        from_stage_id=from_stage_id,
        to_stage_id=state.current_stage_id,
        action=history_action,
        changed_by=actor_id,
        changed_at=changed_at,
        reason=reason,
    ))
    db.session.add(ActionExecutionLog(
        tenant_id=state.tenant_id,
        application_id=state.application_id,
        action_code=action_code,
        stage_id=state.current_stage_id,
        executed_by=actor_id,
        executed_at=changed_at,
        signal_snapshot=signal_snapshot or {},
        conditions_evaluated=conditions_evaluated or [],
        decision_note=decision_note,
        override_reason=override_reason,
        reviewed_by=reviewed_by,
        approved_by=approved_by,
        outcome_type=state.outcome_type,
        is_terminal=state.is_terminal,
        from_stage_id=from_stage_id,
        to_stage_id=state.current_stage_id,
    ))


def _enter_stage(state: ApplicationPipelineState, stage: PipelineStage, now):
    state.current_stage = stage
    state.current_stage_id = stage.id
    state.entered_stage_at = now


# ── Attach ───────────────────────────────────────────────────────────────────


def _resolve_pipeline(tenant_id: int, application: Application, pipeline_id: str | None) -> Pipeline:
    if pipeline_id:
        pipeline = db.session.get(Pipeline, pipeline_id)
        if pipeline is None or pipeline.is_deleted:
            raise NotFoundError(resource="Pipeline", resource_id=pipeline_id)
        if not pipeline.is_visible_to(tenant_id):
            raise ForbiddenError("Pipeline belongs to a different tenant", code=TENANT_MISMATCH)
        return pipeline

    assignment = db.session.execute(
        select(PipelineAssignment).where(PipelineAssignment.job_id == application.job_id)
    ).scalar_one_or_none()
    pipeline = db.session.get(Pipeline, assignment.pipeline_id) if assignment else None
    if pipeline is None or pipeline.is_deleted or not pipeline.is_visible_to(tenant_id):
        raise NotFoundError(
            resource="Pipeline",
            resource_id=application.job_id,
            message="No pipeline assigned to this job",
        )
    return pipeline


def _initial_status(tenant_id: int) -> tuple[str, str]:
    row = db.session.execute(
        select(TenantApplicationStatus)
        .where(
            TenantApplicationStatus.tenant_id == tenant_id,
            TenantApplicationStatus.is_active.is_(True),
            TenantApplicationStatus.is_terminal.is_(False),
            TenantApplicationStatus.outcome_type == OUTCOME_ACTIVE,
        )
        .order_by(TenantApplicationStatus.sort_order, TenantApplicationStatus.status_code)
        .limit(1)
    ).scalar_one_or_none()
    if row is None:
        return FALLBACK_STATUS, OUTCOME_ACTIVE
    return row.status_code, row.outcome_type


def attach_application(tenant_id: int, application_id: str, pipeline_id: str | None = None,
                       actor_id: int | None = None) -> dict:
    """Create the state row and place the application at stage 0.

    Raises:
        NotFoundError: application, pipeline, assignment or first stage missing.
        ForbiddenError: explicit pipeline of another tenant (TENANT_MISMATCH).
        ConflictError: the application already has a state row.
    """

    def work():
        application = get_scoped(Application, application_id, tenant_id=tenant_id)
        existing = db.session.execute(
            select(ApplicationPipelineState.id).where(
                ApplicationPipelineState.application_id == application_id
            )
        ).first()
        if existing is not None:
            raise ConflictError(
                resource="Application state",
                field="application_id",
                value=application_id,
                message="Application is already attached to a pipeline",
            )

        pipeline = _resolve_pipeline(tenant_id, application, pipeline_id)
        first_stage = db.session.execute(
            select(PipelineStage).where(
                PipelineStage.pipeline_id == pipeline.id,
                PipelineStage.order_index == 0,
            )
        ).scalar_one_or_none()
        if first_stage is None:
            raise NotFoundError(
                resource="Pipeline stage",
                resource_id=pipeline.id,
                message="Pipeline has no stages configured",
            )

        status, outcome = _initial_status(tenant_id)
        now = _utcnow()
        state = ApplicationPipelineState(
            tenant_id=tenant_id,
            application_id=application.id,
            job_id=application.job_id,
            pipeline_id=pipeline.id,
            status=status,
            outcome_type=outcome,
            is_terminal=False,
        )
        _enter_stage(state, first_stage, now)
        db.session.add(state)
        db.session.flush()

        _append_audit(
            state,
            action_code=LOG_ACTION_ATTACH,
            history_action=HISTORY_ACTION_MOVE,
            from_stage_id=None,
            actor_id=actor_id,
            changed_at=now,
            reason=ATTACH_REASON,
            decision_note=ATTACH_REASON,
        )
        evaluation_service.ensure_stage_evaluations(tenant_id, application.id, first_stage.id)
        return state

    result = _run(
        work,
        tenant_id=tenant_id,
        application_id=application_id,
        conflict_message="Application is already attached to a pipeline",
    )
    logger.info(
        "Application attached app=%s pipeline=%s stage=%s",
        application_id, result["pipelineId"], result["currentStageName"],
        extra=_log_extra(tenant_id, application_id, LOG_ACTION_ATTACH),
    )
    return result


# ── Execute action ───────────────────────────────────────────────────────────


def _resolve_status_for(tenant_id: int, outcome_type: str, is_terminal: bool) -> TenantApplicationStatus:
    row = db.session.execute(
        select(TenantApplicationStatus)
        .where(
            TenantApplicationStatus.tenant_id == tenant_id,
            TenantApplicationStatus.is_active.is_(True),
            TenantApplicationStatus.outcome_type == outcome_type,
            TenantApplicationStatus.is_terminal.is_(bool(is_terminal)),
        )
        .order_by(TenantApplicationStatus.sort_order, TenantApplicationStatus.status_code)
        .limit(1)
    ).scalar_one_or_none()
    if row is None:
        kind = "terminal" if is_terminal else "non-terminal"
        raise TransitionError(
            f"No active {kind} status with outcome {outcome_type} is configured",
            code=INVALID_STATUS,
        )
    return row


def _next_stage(state: ApplicationPipelineState, stage: PipelineStage) -> PipelineStage:
    nxt = db.session.execute(
        select(PipelineStage).where(
            PipelineStage.pipeline_id == state.pipeline_id,
            PipelineStage.order_index == stage.order_index + 1,
        )
    ).scalar_one_or_none()
    if nxt is None:
        raise TransitionError("At last stage: use a terminal action instead")
    return nxt


def execute_action(
    tenant_id: int,
    application_id: str,
    action_code: str,
    *,
    actor_id: int | None,
    capabilities,
    notes: str | None = None,
    override_reason: str | None = None,
    reviewed_by=None,
    approved_by=None,
) -> dict:
    """Apply a configured stage action to an application.

    Gates run in a fixed order (terminal, action, capability, notes,
    HOLD/ACTIVATE, evaluations, signals, feedback, reviewer/approver,
    destination). A non-empty ``override_reason`` bypasses the evaluation,
    signal and feedback gates only.

    Returns:
        The post-transition state projection (unchanged projection on a no-op).
    """
    code = normalize_code(action_code, "action_code")
    notes = _clean(notes, "notes")
    override = _clean(override_reason, "override_reason")
    caps = set(capabilities or ())

    def work():
        state = load_state(tenant_id, application_id, for_update=True)
        _ensure_not_terminal(state)
        stage = state.current_stage

        action = catalog_service.find_stage_action(tenant_id, stage.id, code)
        if action is None:
            raise TransitionError(f"Action '{code}' is not available at stage '{stage.stage_name}'")

        if not has_capability(caps, action.required_capability):
            raise ForbiddenError(
                f"Missing capability '{action.required_capability}' for action '{code}'"
            )
        if override:
            override_cap = current_app.config.get("TRACKING_OVERRIDE_CAPABILITY")
            if override_cap and not has_capability(caps, override_cap):
                raise ForbiddenError(f"Missing capability '{override_cap}' to override gates")

        if action.requires_notes and not notes:
            raise ValidationError(f"Action '{code}' requires notes")

        if not hold_guard_allows(action.outcome_type, state.outcome_type):
            raise TransitionError(
                f"Action '{code}' is not allowed while the application is {state.outcome_type}"
            )

        breakdown = evaluation_service.get_required_evaluations(tenant_id, application_id, stage.id)
        if not evaluation_service.evaluations_complete(breakdown) and not override:
            pending = [item["templateName"] or item["templateId"] for item in breakdown if not item["completed"]]
            raise ForbiddenError(
                "Required evaluations are not complete: " + ", ".join(pending),
                code=EVALUATIONS_INCOMPLETE,
                details={"requiredEvaluations": breakdown},
            )

        snapshot = signal_service.get_signal_snapshot(tenant_id, application_id)
        signals_met, results = evaluate_signal_conditions(action.signal_conditions, snapshot)
        if not signals_met and not override:
            failures = describe_failures(results)
            raise ForbiddenError(
                "Signal conditions not met: " + "; ".join(failures),
                code=SIGNALS_NOT_MET,
                details={"failedConditions": failures},
            )
        if has_warnings(results) and not (notes or override):
            missing = [r["signal"] for r in results if r.get("warning")]
            raise ValidationError(
                "A note is required because these signals are missing: " + ", ".join(missing)
            )

        if (action.requires_feedback and not override
                and not evaluation_service.feedback_submitted(tenant_id, application_id, stage.stage_name)):
            raise ForbiddenError(
                f"Feedback must be submitted for stage '{stage.stage_name}' before '{code}'",
                code=FEEDBACK_REQUIRED,
            )

        reviewer = _tenant_user(tenant_id, reviewed_by, "reviewed_by")
        approver = _tenant_user(tenant_id, approved_by, "approved_by")

        to_stage = _next_stage(state, stage) if action.moves_to_next_stage else stage
        new_status, new_outcome = state.status, state.outcome_type
        if action.outcome_type:
            status_row = _resolve_status_for(tenant_id, action.outcome_type, action.is_terminal)
            new_status, new_outcome = status_row.status_code, status_row.outcome_type
        new_terminal = bool(action.is_terminal)

        if (to_stage.id == stage.id and new_status == state.status
                and new_outcome == state.outcome_type and new_terminal == state.is_terminal):
            logger.debug("No-op action %s on app=%s", code, application_id,
                         extra=_log_extra(tenant_id, application_id, code))
            return state

        now = _utcnow()
        from_stage_id = stage.id
        if to_stage.id != stage.id:
            _enter_stage(state, to_stage, now)
        state.status = new_status
        state.outcome_type = new_outcome
        state.is_terminal = new_terminal
        state.updated_at = now
        db.session.flush()

        _append_audit(
            state,
            action_code=code,
            history_action=code,
            from_stage_id=from_stage_id,
            actor_id=actor_id,
            changed_at=now,
            reason=notes or override,
            signal_snapshot=snapshot,
            conditions_evaluated=[log_view(r) for r in results],
            decision_note=notes,
            override_reason=override,
            reviewed_by=reviewer,
            approved_by=approver,
        )
        if to_stage.id != from_stage_id:
            evaluation_service.ensure_stage_evaluations(tenant_id, application_id, to_stage.id)
        return state

    result = _run(work, tenant_id=tenant_id, application_id=application_id)
    logger.info(
        "Action %s executed app=%s stage=%s status=%s override=%s",
        code, application_id, result["currentStageName"], result["status"], bool(override),
        extra=_log_extra(tenant_id, application_id, code),
    )
    return result


# ── Legacy paths ─────────────────────────────────────────────────────────────


def move_application(tenant_id: int, application_id: str, *, to_stage_id: str,
                     actor_id: int | None, reason: str | None = None) -> dict:
    """Move directly to any stage of the application's pipeline."""
    reason = _clean(reason, "reason")

    def work():
        state = load_state(tenant_id, application_id, for_update=True)
        _ensure_not_terminal(state)

        target = db.session.get(PipelineStage, to_stage_id)
        if target is None or target.pipeline_id != state.pipeline_id:
            raise TransitionError(
                "Target stage does not belong to the application's pipeline",
                code=INVALID_STAGE,
            )
        if target.id == state.current_stage_id:
            return state

        now = _utcnow()
        from_stage_id = state.current_stage_id
        _enter_stage(state, target, now)
        state.updated_at = now
        db.session.flush()

        _append_audit(
            state,
            action_code=HISTORY_ACTION_MOVE,
            history_action=HISTORY_ACTION_MOVE,
            from_stage_id=from_stage_id,
            actor_id=actor_id,
            changed_at=now,
            reason=reason,
            signal_snapshot=signal_service.get_signal_snapshot(tenant_id, application_id),
            decision_note=reason,
        )
        evaluation_service.ensure_stage_evaluations(tenant_id, application_id, target.id)
        return state

    result = _run(work, tenant_id=tenant_id, application_id=application_id)
    logger.info("Application moved app=%s stage=%s", application_id, result["currentStageName"],
                extra=_log_extra(tenant_id, application_id, HISTORY_ACTION_MOVE))
    return result


def update_application_status(tenant_id: int, application_id: str, *, status_code: str,
                              actor_id: int | None, reason: str | None = None) -> dict:
    """Set a catalog status directly, without a stage action."""
    code = normalize_code(status_code, "status")
    reason = _clean(reason, "reason")

    def work():
        state = load_state(tenant_id, application_id, for_update=True)
        _ensure_not_terminal(state)

        status_row = catalog_service.find_status(tenant_id, code)
        if status_row is None:
            raise TransitionError(
                f"Status '{code}' is not configured for this tenant",
                code=INVALID_STATUS,
            )
        if status_row.status_code == state.status:
            return state

        now = _utcnow()
        state.status = status_row.status_code
        state.outcome_type = status_row.outcome_type
        state.is_terminal = status_row.is_terminal
        state.updated_at = now
        db.session.flush()

        _append_audit(
            state,
            action_code=status_row.action_code,
            history_action=status_row.action_code,
            from_stage_id=state.current_stage_id,
            actor_id=actor_id,
            changed_at=now,
            reason=reason,
            signal_snapshot=signal_service.get_signal_snapshot(tenant_id, application_id),
            decision_note=reason,
        )
        return state

    result = _run(work, tenant_id=tenant_id, application_id=application_id)
    logger.info("Application status set app=%s status=%s", application_id, result["status"],
                extra=_log_extra(tenant_id, application_id, code))
    return result


def get_state(tenant_id: int, application_id: str) -> dict:
    return load_state(tenant_id, application_id).to_dict()
