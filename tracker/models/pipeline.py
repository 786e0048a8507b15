"""
Recruiting collaborator models - Pipeline, PipelineStage, Job,
PipelineAssignment, Application.

These rows are owned by the pipeline and job services. The tracking engine
reads them to resolve where an application starts and where "advance" leads;
it never edits them.

Stages form an ordered list per pipeline: ``order_index`` is zero-based and
unique inside a pipeline, and the next stage is always ``order_index + 1``.
"""

from tracker.models import db
from tracker.models.base import TenantModel, _iso, _utcnow, _uuid


class Pipeline(db.Model):
    """Named template of ordered stages.

    ``tenant_id`` is nullable: a pipeline without a tenant is the global
    default shared by every tenant.
    """

    __tablename__ = "pipelines"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    stages = db.relationship(
        "PipelineStage",
        back_populates="pipeline",
        order_by="PipelineStage.order_index",
        cascade="all, delete-orphan",
    )

    def is_visible_to(self, tenant_id):
        return self.tenant_id is None or self.tenant_id == tenant_id

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "stages": [s.to_dict() for s in self.stages],
            "created_at": _iso(self.created_at),
        }


class PipelineStage(db.Model):
    __tablename__ = "pipeline_stages"
    __table_args__ = (
        db.UniqueConstraint("pipeline_id", "order_index", name="uq_stage_pipeline_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    pipeline_id = db.Column(
        db.String(36),
        db.ForeignKey("pipelines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_name = db.Column(db.String(200), nullable=False)
    stage_type = db.Column(
        db.String(50),
        nullable=False,
        default="screening",
        comment="screening | interview | decision | offer | outcome",
    )
    order_index = db.Column(db.Integer, nullable=False)
    stage_metadata = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=_utcnow)

    pipeline = db.relationship("Pipeline", back_populates="stages")

    def to_dict(self):
        return {
            "id": self.id,
            "pipelineId": self.pipeline_id,
            "stageName": self.stage_name,
            "stageType": self.stage_type,
            "orderIndex": self.order_index,
            "metadata": self.stage_metadata or {},
        }


class Job(TenantModel):
    __tablename__ = "jobs"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(20), default="open")
    created_at = db.Column(db.DateTime, default=_utcnow)


class PipelineAssignment(db.Model):
    """The pipeline a job's applications are attached to by default."""

    __tablename__ = "pipeline_assignments"

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.String(36),
        db.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    pipeline_id = db.Column(
        db.String(36),
        db.ForeignKey("pipelines.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at = db.Column(db.DateTime, default=_utcnow)


class Application(TenantModel):
    __tablename__ = "applications"
    __table_args__ = (
        db.Index("ix_applications_tenant_job", "tenant_id", "job_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    job_id = db.Column(
        db.String(36),
        db.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    applicant_name = db.Column(db.String(200))
    applicant_email = db.Column(db.String(200))
    created_at = db.Column(db.DateTime, default=_utcnow)

    job = db.relationship("Job")
