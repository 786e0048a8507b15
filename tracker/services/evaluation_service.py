"""
Evaluation gate.

Decides which evaluation templates a stage requires and whether each has a
COMPLETED instance for the application at that stage. Also:

  - ensure_stage_evaluations: creates PENDING instances on stage entry for
    stage evaluations flagged auto_create (called by the transition engine
    inside its transaction).
  - complete_evaluation: the separately invoked completion step; marks an
    instance COMPLETED and aggregates participant responses into
    EVALUATION-sourced signals.

Aggregation per signal (template signal_schema, falling back to the
template's default_aggregation):
    MAJORITY   boolean → more true than false answers
    UNANIMOUS  boolean → every answer true
    ANY        boolean → at least one answer true
    AVERAGE    integer/float → arithmetic mean
Text signals and signals with no answers are skipped.
"""

import logging

from sqlalchemy import select

from tracker.core.exceptions import NotFoundError, TransitionError, ValidationError
from tracker.models import db
from tracker.models.base import _utcnow
from tracker.models.evaluation import (
    EVAL_CANCELLED,
    EVAL_COMPLETED,
    EVAL_PENDING,
    EvaluationInstance,
    EvaluationParticipant,
    EvaluationResponse,
    StageEvaluation,
    StageFeedback,
)
from tracker.models.pipeline import Application
from tracker.services import signal_service
from tracker.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


# ── Gate ─────────────────────────────────────────────────────────────────────


def _stage_evaluations(tenant_id: int, stage_id: str, *, required_only: bool):
    stmt = select(StageEvaluation).where(
        StageEvaluation.tenant_id == tenant_id,
        StageEvaluation.stage_id == stage_id,
        StageEvaluation.is_active.is_(True),
    )
    if required_only:
        stmt = stmt.where(StageEvaluation.required.is_(True))
    stmt = stmt.order_by(StageEvaluation.execution_order, StageEvaluation.created_at)
    return db.session.execute(stmt).scalars().all()


def get_required_evaluations(tenant_id: int, application_id: str, stage_id: str) -> list[dict]:
    """Per-template completeness for the stage's required evaluations.

    Returns:
        [{"templateId", "templateName", "instanceId", "status", "completed"}]
        ``instanceId`` / ``status`` are None when no instance exists yet.
    """
    links = _stage_evaluations(tenant_id, stage_id, required_only=True)
    if not links:
        return []

    template_ids = [link.evaluation_template_id for link in links]
    instances = db.session.execute(
        select(EvaluationInstance).where(
            EvaluationInstance.tenant_id == tenant_id,
            EvaluationInstance.application_id == application_id,
            EvaluationInstance.stage_id == stage_id,
            EvaluationInstance.template_id.in_(template_ids),
        )
    ).scalars().all()
    by_template = {inst.template_id: inst for inst in instances}

    breakdown = []
    for link in links:
        inst = by_template.get(link.evaluation_template_id)
        breakdown.append({
            "templateId": link.evaluation_template_id,
            "templateName": link.template.name if link.template else None,
            "instanceId": inst.id if inst else None,
            "status": inst.status if inst else None,
            "completed": bool(inst and inst.status == EVAL_COMPLETED),
        })
    return breakdown


def evaluations_complete(breakdown: list[dict]) -> bool:
    return all(item["completed"] for item in breakdown)


def feedback_submitted(tenant_id: int, application_id: str, stage_name: str) -> bool:
    """True when any feedback exists for the application at the stage label."""
    stmt = (
        select(StageFeedback.id)
        .where(
            StageFeedback.tenant_id == tenant_id,
            StageFeedback.application_id == application_id,
            StageFeedback.stage_name == stage_name,
        )
        .limit(1)
    )
    return db.session.execute(stmt).first() is not None


# ── Stage entry ──────────────────────────────────────────────────────────────


def ensure_stage_evaluations(tenant_id: int, application_id: str, stage_id: str) -> int:
    """Create PENDING instances for the stage's auto-create evaluations.

    Idempotent: templates that already have an instance for
    (application, stage) are skipped. Does NOT commit.

    Returns:
        Number of instances created.
    """
    links = [link for link in _stage_evaluations(tenant_id, stage_id, required_only=False)
             if link.auto_create]
    if not links:
        return 0

    existing = set(db.session.execute(
        select(EvaluationInstance.template_id).where(
            EvaluationInstance.tenant_id == tenant_id,
            EvaluationInstance.application_id == application_id,
            EvaluationInstance.stage_id == stage_id,
        )
    ).scalars().all())

    created = 0
    for link in links:
        if link.evaluation_template_id in existing:
            continue
        db.session.add(EvaluationInstance(
            tenant_id=tenant_id,
            application_id=application_id,
            template_id=link.evaluation_template_id,
            stage_id=stage_id,
            status=EVAL_PENDING,
        ))
        existing.add(link.evaluation_template_id)
        created += 1

    if created:
        db.session.flush()
        logger.info(
            "Auto-created %d evaluation(s) app=%s stage=%s", created, application_id, stage_id,
            extra={"tenant_id": tenant_id},
        )
    return created


# ── Listing ──────────────────────────────────────────────────────────────────


def list_application_evaluations(tenant_id: int, application_id: str) -> list[dict]:
    get_scoped(Application, application_id, tenant_id=tenant_id)
    rows = (
        EvaluationInstance.query_for_tenant(tenant_id)
        .filter_by(application_id=application_id)
        .order_by(EvaluationInstance.created_at)
        .all()
    )
    return [row.to_dict() for row in rows]


# ── Completion ───────────────────────────────────────────────────────────────


def complete_evaluation(
    tenant_id: int,
    evaluation_id: str,
    *,
    actor_id: int | None,
    force: bool = False,
    force_note: str | None = None,
) -> dict:
    """Mark an evaluation COMPLETED and derive signals from its responses.

    Raises:
        NotFoundError: instance absent in the tenant.
        TransitionError: already COMPLETED or CANCELLED (INVALID_ACTION).
        ValidationError: force without a note, or not enough submissions
            for the template's participant type without force.
    """
    instance = db.session.execute(
        select(EvaluationInstance)
        .where(EvaluationInstance.id == evaluation_id, EvaluationInstance.tenant_id == tenant_id)
        .with_for_update()
    ).scalar_one_or_none()
    if instance is None:
        raise NotFoundError(resource="Evaluation", resource_id=evaluation_id)

    if instance.status == EVAL_COMPLETED:
        raise TransitionError("Evaluation is already completed")
    if instance.status == EVAL_CANCELLED:
        raise TransitionError("Cannot complete a cancelled evaluation")

    note = (force_note or "").strip()
    if force and not note:
        raise ValidationError("Force-complete requires a note explaining the override")

    total = len(instance.participants)
    submitted = sum(1 for p in instance.participants if p.status == "SUBMITTED")
    participant_type = instance.template.participant_type if instance.template else "SINGLE"

    if not force:
        if participant_type == "PANEL" and submitted < total:
            raise ValidationError(
                f"{submitted} of {total} participants submitted. Use force-complete with note to override.",
                code="EVALUATION_INCOMPLETE",
            )
        if participant_type in ("SINGLE", "SEQUENTIAL") and submitted == 0:
            raise ValidationError("No response submitted yet.", code="EVALUATION_INCOMPLETE")

    try:
        instance.status = EVAL_COMPLETED
        instance.completed_at = _utcnow()
        instance.force_completed = bool(force)
        instance.force_complete_note = note or None
        instance.force_completed_by = actor_id if force else None
        db.session.flush()

        aggregated = aggregate_evaluation_signals(instance)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Evaluation completed id=%s app=%s force=%s participants=%d/%d signals=%d",
        instance.id, instance.application_id, force, submitted, total, len(aggregated),
        extra={"tenant_id": tenant_id},
    )
    result = instance.to_dict()
    result["signals"] = aggregated
    return result


def _responses_for(instance: EvaluationInstance) -> list[dict]:
    stmt = (
        select(EvaluationResponse.response_data)
        .join(EvaluationParticipant, EvaluationParticipant.id == EvaluationResponse.participant_id)
        .where(EvaluationParticipant.evaluation_id == instance.id)
    )
    return [data or {} for data in db.session.execute(stmt).scalars().all()]


def _aggregate(kind: str, signal_type: str, answers: list):
    if signal_type == "boolean":
        flags = [a for a in (_as_bool(v) for v in answers) if a is not None]
        if not flags:
            return None
        if kind == "MAJORITY":
            return flags.count(True) > flags.count(False)
        if kind == "UNANIMOUS":
            return all(flags)
        if kind == "ANY":
            return any(flags)
        return None
    if signal_type in ("integer", "float") and kind == "AVERAGE":
        numbers = []
        for v in answers:
            try:
                numbers.append(float(v))
            except (TypeError, ValueError):
                continue
        if not numbers:
            return None
        return sum(numbers) / len(numbers)
    return None


def _as_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def aggregate_evaluation_signals(instance: EvaluationInstance) -> list[dict]:
    """Record one EVALUATION signal per aggregatable key of the template.

    Does NOT commit. Returns the recorded signals as dicts.
    """
    template = instance.template
    if template is None:
        return []

    responses = _responses_for(instance)
    recorded = []
    for definition in template.signal_schema or []:
        key = definition.get("key")
        signal_type = definition.get("type")
        kind = definition.get("aggregation") or template.default_aggregation
        if not key or signal_type == "text" or not kind:
            continue

        answers = [r[key] for r in responses if key in r]
        value = _aggregate(kind, signal_type, answers)
        if value is None:
            continue
        # AVERAGE of an integer signal is stored as float
        stored_type = "float" if signal_type == "integer" and kind == "AVERAGE" else signal_type

        row = signal_service.record_signal(
            instance.tenant_id,
            instance.application_id,
            signal_key=key,
            signal_type=stored_type,
            value=value,
            source_type="EVALUATION",
            source_id=instance.id,
        )
        recorded.append(row.to_dict())
    return recorded
