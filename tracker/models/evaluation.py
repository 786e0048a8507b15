"""
Evaluation collaborator models.

Evaluation templates, instances, participants and responses are authored by
the evaluation service. The tracking engine reads them (Evaluation Gate),
creates PENDING instances on stage entry for stages configured with
``auto_create``, and completes instances when asked to by the separately
invoked completion endpoint.

StageFeedback is written by the interview service; the engine only checks
whether at least one row exists for the application at the current stage.
"""

from tracker.models import db
from tracker.models.base import TenantModel, _iso, _utcnow, _uuid

# ── Constants ─────────────────────────────────────────────────────────────────

EVAL_PENDING = "PENDING"
EVAL_IN_PROGRESS = "IN_PROGRESS"
EVAL_COMPLETED = "COMPLETED"
EVAL_CANCELLED = "CANCELLED"

EVALUATION_STATUSES = frozenset({EVAL_PENDING, EVAL_IN_PROGRESS, EVAL_COMPLETED, EVAL_CANCELLED})

PARTICIPANT_TYPES = frozenset({"SINGLE", "PANEL", "SEQUENTIAL"})
AGGREGATIONS = frozenset({"MAJORITY", "UNANIMOUS", "ANY", "AVERAGE"})


class EvaluationTemplate(TenantModel):
    """Evaluation form definition.

    signal_schema example:
        [{"key": "TECH_PASS", "type": "boolean", "aggregation": "MAJORITY"},
         {"key": "TECH_SCORE", "type": "integer", "aggregation": "AVERAGE"}]
    """

    __tablename__ = "evaluation_templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    participant_type = db.Column(db.String(20), nullable=False, default="SINGLE")
    signal_schema = db.Column(db.JSON, nullable=False, default=list)
    default_aggregation = db.Column(db.String(20), default="MAJORITY")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)


class StageEvaluation(TenantModel):
    """Links an evaluation template to a pipeline stage."""

    __tablename__ = "stage_evaluations"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "stage_id", "evaluation_template_id", name="uq_stage_evaluation"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    stage_id = db.Column(
        db.String(36),
        db.ForeignKey("pipeline_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    evaluation_template_id = db.Column(
        db.String(36),
        db.ForeignKey("evaluation_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    execution_order = db.Column(db.Integer, nullable=False, default=0)
    auto_create = db.Column(db.Boolean, nullable=False, default=True)
    required = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    template = db.relationship("EvaluationTemplate")


class EvaluationInstance(TenantModel):
    __tablename__ = "evaluation_instances"
    __table_args__ = (
        db.UniqueConstraint(
            "tenant_id", "application_id", "template_id", "stage_id",
            name="uq_evaluation_instance_app_template_stage",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36),
        db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_id = db.Column(
        db.String(36),
        db.ForeignKey("evaluation_templates.id"),
        nullable=False,
    )
    stage_id = db.Column(db.String(36), db.ForeignKey("pipeline_stages.id"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=EVAL_PENDING)
    completed_at = db.Column(db.DateTime)
    force_completed = db.Column(db.Boolean, nullable=False, default=False)
    force_complete_note = db.Column(db.Text)
    force_completed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    template = db.relationship("EvaluationTemplate")
    participants = db.relationship(
        "EvaluationParticipant", back_populates="evaluation", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "applicationId": self.application_id,
            "templateId": self.template_id,
            "templateName": self.template.name if self.template else None,
            "stageId": self.stage_id,
            "status": self.status,
            "completedAt": _iso(self.completed_at),
            "forceCompleted": self.force_completed,
            "forceCompleteNote": self.force_complete_note,
            "participantCount": len(self.participants),
            "createdAt": _iso(self.created_at),
        }


class EvaluationParticipant(TenantModel):
    __tablename__ = "evaluation_participants"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    evaluation_id = db.Column(
        db.String(36),
        db.ForeignKey("evaluation_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")  # PENDING | SUBMITTED
    created_at = db.Column(db.DateTime, default=_utcnow)

    evaluation = db.relationship("EvaluationInstance", back_populates="participants")
    responses = db.relationship("EvaluationResponse", back_populates="participant")


class EvaluationResponse(TenantModel):
    """Submitted answers of one participant. Immutable once written."""

    __tablename__ = "evaluation_responses"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    participant_id = db.Column(
        db.String(36),
        db.ForeignKey("evaluation_participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    response_data = db.Column(db.JSON, nullable=False, default=dict)
    submitted_at = db.Column(db.DateTime, default=_utcnow)

    participant = db.relationship("EvaluationParticipant", back_populates="responses")


class StageFeedback(TenantModel):
    __tablename__ = "stage_feedback"
    __table_args__ = (
        db.Index("ix_stage_feedback_app_stage", "tenant_id", "application_id", "stage_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36),
        db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_name = db.Column(db.String(200), nullable=False)
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    rating = db.Column(db.Integer)
    comments = db.Column(db.Text)
    submitted_at = db.Column(db.DateTime, default=_utcnow)
