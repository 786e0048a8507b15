"""
Pipeline tracking models.

Catalog (tenant configuration):
    TenantApplicationStatus - legal status codes with outcome + terminal flag
    TenantStageAction       - legal actions per stage with gating rules

State and audit:
    ApplicationPipelineState - exactly one live row per application
    ApplicationStageHistory  - append-only, one row per transition
    ActionExecutionLog       - append-only accountability record per transition

History and log rows are NEVER updated or deleted. They carry plain stage ids
(no FK) so the trail survives pipeline edits, and the log stores the signal
snapshot inline rather than pointing at live signal rows.
"""

from tracker.models import db
from tracker.models.base import TenantModel, _iso, _utcnow, _uuid

# ── Constants ─────────────────────────────────────────────────────────────────

OUTCOME_ACTIVE = "ACTIVE"
OUTCOME_HOLD = "HOLD"
OUTCOME_SUCCESS = "SUCCESS"
OUTCOME_FAILURE = "FAILURE"
OUTCOME_NEUTRAL = "NEUTRAL"

OUTCOME_TYPES = frozenset({
    OUTCOME_ACTIVE, OUTCOME_HOLD, OUTCOME_SUCCESS, OUTCOME_FAILURE, OUTCOME_NEUTRAL,
})

HISTORY_ACTION_MOVE = "MOVE"
LOG_ACTION_ATTACH = "ATTACH"


# ═════════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════════

class TenantApplicationStatus(TenantModel):
    """Tenant-defined status code.

    Business rules:
    - status_code is normalised (A-Z, 0-9, underscore; 2-50 chars) and unique
      per tenant.
    - Deletion is soft (is_active=False).
    - Neither delete nor terminal→non-terminal is allowed while a live
      application state uses the code.
    """

    __tablename__ = "tenant_application_statuses"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "status_code", name="uq_tenant_status_code"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    status_code = db.Column(db.String(50), nullable=False)
    display_name = db.Column(db.String(100), nullable=False)
    action_code = db.Column(db.String(50), nullable=False)
    outcome_type = db.Column(db.String(20), nullable=False, default=OUTCOME_NEUTRAL)
    is_terminal = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=99)
    color_hex = db.Column(db.String(7))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "statusCode": self.status_code,
            "displayName": self.display_name,
            "actionCode": self.action_code,
            "outcomeType": self.outcome_type,
            "isTerminal": self.is_terminal,
            "sortOrder": self.sort_order,
            "colorHex": self.color_hex,
            "isActive": self.is_active,
        }


class TenantStageAction(TenantModel):
    """Tenant-configured, capability-gated operation available at one stage.

    ``outcome_type`` is nullable: an action without one (plain ADVANCE) keeps
    the application's current status and outcome.

    ``signal_conditions`` is stored in normalised form:
        {"logic": "ALL" | "ANY",
         "conditions": [{"signal", "operator", "value", "onMissing"}]}
    """

    __tablename__ = "tenant_stage_actions"
    __table_args__ = (
        db.UniqueConstraint(
            "tenant_id", "stage_id", "action_code", name="uq_stage_action_code",
        ),
        db.Index("ix_stage_actions_tenant_stage", "tenant_id", "stage_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    stage_id = db.Column(
        db.String(36),
        db.ForeignKey("pipeline_stages.id", ondelete="CASCADE"),
        nullable=False,
    )
    action_code = db.Column(db.String(50), nullable=False)
    display_name = db.Column(db.String(100), nullable=False)
    outcome_type = db.Column(db.String(20), nullable=True)
    moves_to_next_stage = db.Column(db.Boolean, nullable=False, default=False)
    is_terminal = db.Column(db.Boolean, nullable=False, default=False)
    requires_feedback = db.Column(db.Boolean, nullable=False, default=False)
    requires_notes = db.Column(db.Boolean, nullable=False, default=False)
    required_capability = db.Column(db.String(100), nullable=True)
    signal_conditions = db.Column(db.JSON, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    stage = db.relationship("PipelineStage")

    def to_dict(self):
        stage = self.stage
        return {
            "id": self.id,
            "stageId": self.stage_id,
            "stageName": stage.stage_name if stage else None,
            "stageType": stage.stage_type if stage else None,
            "stageOrderIndex": stage.order_index if stage else None,
            "pipelineId": stage.pipeline_id if stage else None,
            "actionCode": self.action_code,
            "displayName": self.display_name,
            "outcomeType": self.outcome_type,
            "movesToNextStage": self.moves_to_next_stage,
            "isTerminal": self.is_terminal,
            "requiresFeedback": self.requires_feedback,
            "requiresNotes": self.requires_notes,
            "requiredCapability": self.required_capability,
            "signalConditions": self.signal_conditions,
            "sortOrder": self.sort_order,
            "isActive": self.is_active,
        }


# ═════════════════════════════════════════════════════════════════════════════
# State
# ═════════════════════════════════════════════════════════════════════════════

class ApplicationPipelineState(TenantModel):
    """Where an application currently sits in its pipeline.

    One row per application (unique application_id). ``version`` is the
    optimistic-lock counter: every UPDATE is issued as
    ``... WHERE id = :id AND version = :seen`` and bumps it, so a concurrent
    writer that read the same version fails with StaleDataError.
    """

    __tablename__ = "application_pipeline_states"
    __table_args__ = (
        db.UniqueConstraint("application_id", name="uq_state_application"),
        db.Index("ix_states_tenant_pipeline_stage", "tenant_id", "pipeline_id", "current_stage_id"),
        db.Index("ix_states_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36),
        db.ForeignKey("applications.id"),
        nullable=False,
    )
    job_id = db.Column(db.String(36), nullable=True)
    pipeline_id = db.Column(
        db.String(36),
        db.ForeignKey("pipelines.id"),
        nullable=False,
    )
    current_stage_id = db.Column(
        db.String(36),
        db.ForeignKey("pipeline_stages.id"),
        nullable=False,
    )
    status = db.Column(db.String(50), nullable=False)
    outcome_type = db.Column(db.String(20), nullable=False, default=OUTCOME_ACTIVE)
    is_terminal = db.Column(db.Boolean, nullable=False, default=False)
    entered_stage_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    application = db.relationship("Application")
    current_stage = db.relationship("PipelineStage")

    def to_dict(self):
        stage = self.current_stage
        return {
            "id": self.id,
            "applicationId": self.application_id,
            "jobId": self.job_id,
            "pipelineId": self.pipeline_id,
            "currentStageId": self.current_stage_id,
            "currentStageName": stage.stage_name if stage else None,
            "currentStageIndex": stage.order_index if stage else None,
            "status": self.status,
            "outcomeType": self.outcome_type,
            "isTerminal": self.is_terminal,
            "enteredStageAt": _iso(self.entered_stage_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Audit (append-only)
# ═════════════════════════════════════════════════════════════════════════════

class ApplicationStageHistory(TenantModel):
    """One row per committed transition. Never updated or deleted."""

    __tablename__ = "application_stage_history"
    __table_args__ = (
        db.Index("ix_stage_history_app_changed", "application_id", "changed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(db.String(36), nullable=False)
    pipeline_id = db.Column(db.String(36), nullable=False)
    from_stage_id = db.Column(db.String(36), nullable=True, comment="NULL only for the initial attach")
    to_stage_id = db.Column(db.String(36), nullable=True)
    action = db.Column(db.String(50), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    reason = db.Column(db.Text)


class ActionExecutionLog(TenantModel):
    """Compliance record for one executed transition.

    signal_snapshot and conditions_evaluated are point-in-time copies taken
    inside the transition transaction; they are never re-derived.
    """

    __tablename__ = "action_execution_log"
    __table_args__ = (
        db.Index("ix_exec_log_app_executed", "application_id", "executed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(db.String(36), nullable=False)
    action_code = db.Column(db.String(50), nullable=False)
    stage_id = db.Column(db.String(36), nullable=True)
    executed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    executed_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    signal_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    conditions_evaluated = db.Column(db.JSON, nullable=False, default=list)
    decision_note = db.Column(db.Text)
    override_reason = db.Column(db.Text)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    outcome_type = db.Column(db.String(20))
    is_terminal = db.Column(db.Boolean, nullable=False, default=False)
    from_stage_id = db.Column(db.String(36), nullable=True)
    to_stage_id = db.Column(db.String(36), nullable=True)
