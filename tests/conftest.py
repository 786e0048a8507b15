"""
Shared pytest fixtures for the pipeline tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - factory: builders for tenants, users (+ JWT headers), pipelines,
      jobs, applications, catalog rows and evaluations
    - world: one seeded tenant with a three-stage pipeline and an
      unattached application, plus a second tenant for isolation tests
    - file_app / file_world: the same on a file-backed SQLite database,
      for tests that need a second connection
"""

from types import SimpleNamespace

import pytest

from tracker import create_app
from tracker.config import TestingConfig
from tracker.models import db as _db
from tracker.models.auth import RoleCapability, Tenant, User
from tracker.models.evaluation import (
    EvaluationParticipant,
    EvaluationResponse,
    EvaluationTemplate,
    StageEvaluation,
    StageFeedback,
)
from tracker.models.pipeline import Application, Job, Pipeline, PipelineAssignment, PipelineStage
from tracker.models.tracking import TenantApplicationStatus, TenantStageAction
from tracker.services import seed_service, transition_engine
from tracker.services.jwt_service import generate_access_token

DEFAULT_STAGES = (
    ("Applied", "screening"),
    ("Interview", "interview"),
    ("Offer", "offer"),
)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Builders ─────────────────────────────────────────────────────────────


class Factory:
    """Row builders. Every method commits so API calls see the data."""

    def __init__(self):
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def tenant(self, name="Acme Corp", seed=True):
        n = self._next()
        t = Tenant(name=name, slug=f"tenant-{n}", is_active=True)
        _db.session.add(t)
        _db.session.commit()
        if seed:
            seed_service.seed_default_statuses(t.id)
            seed_service.seed_default_capabilities(t.id)
            _db.session.commit()
        return t

    def user(self, tenant, role="HR", email=None, status="active"):
        n = self._next()
        u = User(
            tenant_id=tenant.id,
            email=email or f"user{n}@example.com",
            full_name=f"User {n}",
            role=role,
            status=status,
        )
        _db.session.add(u)
        _db.session.commit()
        return u

    def headers(self, user, tenant_id=None):
        token = generate_access_token(user.id, tenant_id or user.tenant_id, [user.role])
        return {"Authorization": f"Bearer {token}"}

    def pipeline(self, tenant=None, stages=DEFAULT_STAGES, name="Default Pipeline", seed_actions=True):
        p = Pipeline(tenant_id=tenant.id if tenant else None, name=name)
        _db.session.add(p)
        _db.session.flush()
        for idx, (stage_name, stage_type) in enumerate(stages):
            _db.session.add(PipelineStage(
                pipeline_id=p.id, stage_name=stage_name, stage_type=stage_type, order_index=idx,
            ))
        _db.session.commit()
        if seed_actions and tenant is not None:
            seed_service.seed_default_stage_actions(tenant.id, p)
            _db.session.commit()
        return p

    def job(self, tenant, pipeline=None, title="Backend Engineer"):
        j = Job(tenant_id=tenant.id, title=title)
        _db.session.add(j)
        _db.session.flush()
        if pipeline is not None:
            _db.session.add(PipelineAssignment(job_id=j.id, pipeline_id=pipeline.id))
        _db.session.commit()
        return j

    def application(self, tenant, job, name="Ada Lovelace"):
        n = self._next()
        a = Application(
            tenant_id=tenant.id,
            job_id=job.id,
            applicant_name=name,
            applicant_email=f"applicant{n}@example.com",
        )
        _db.session.add(a)
        _db.session.commit()
        return a

    def status(self, tenant, code, outcome, terminal=False, sort_order=10, action_code=None):
        row = TenantApplicationStatus(
            tenant_id=tenant.id,
            status_code=code,
            display_name=code.title(),
            action_code=action_code or code,
            outcome_type=outcome,
            is_terminal=terminal,
            sort_order=sort_order,
        )
        _db.session.add(row)
        _db.session.commit()
        return row

    def action(self, tenant, stage, code, **fields):
        fields.setdefault("display_name", code.title())
        row = TenantStageAction(tenant_id=tenant.id, stage_id=stage.id, action_code=code, **fields)
        _db.session.add(row)
        _db.session.commit()
        return row

    def capability(self, tenant, role, *capabilities):
        for cap in capabilities:
            _db.session.add(RoleCapability(tenant_id=tenant.id, role_name=role, capability=cap))
        _db.session.commit()

    def template(self, tenant, name="Tech Interview", participant_type="SINGLE", signal_schema=None,
                 default_aggregation="MAJORITY"):
        row = EvaluationTemplate(
            tenant_id=tenant.id,
            name=name,
            participant_type=participant_type,
            signal_schema=signal_schema or [],
            default_aggregation=default_aggregation,
        )
        _db.session.add(row)
        _db.session.commit()
        return row

    def stage_evaluation(self, tenant, stage, template, required=True, auto_create=True):
        row = StageEvaluation(
            tenant_id=tenant.id,
            stage_id=stage.id,
            evaluation_template_id=template.id,
            required=required,
            auto_create=auto_create,
        )
        _db.session.add(row)
        _db.session.commit()
        return row

    def participant(self, tenant, instance, user, response=None):
        p = EvaluationParticipant(
            tenant_id=tenant.id,
            evaluation_id=instance.id,
            user_id=user.id,
            status="SUBMITTED" if response is not None else "PENDING",
        )
        _db.session.add(p)
        _db.session.flush()
        if response is not None:
            _db.session.add(EvaluationResponse(tenant_id=tenant.id, participant_id=p.id, response_data=response))
        _db.session.commit()
        return p

    def feedback(self, tenant, application, stage_name, user=None, rating=4):
        row = StageFeedback(
            tenant_id=tenant.id,
            application_id=application.id,
            stage_name=stage_name,
            submitted_by=user.id if user else None,
            rating=rating,
        )
        _db.session.add(row)
        _db.session.commit()
        return row


@pytest.fixture()
def factory():
    return Factory()


def _build_world(factory):
    tenant = factory.tenant("Acme Corp")
    other = factory.tenant("Globex")
    hr = factory.user(tenant, role="HR")
    admin = factory.user(tenant, role="ADMIN")
    interviewer = factory.user(tenant, role="INTERVIEWER")
    other_admin = factory.user(other, role="ADMIN")

    pipeline = factory.pipeline(tenant)
    stages = sorted(pipeline.stages, key=lambda s: s.order_index)
    job = factory.job(tenant, pipeline)
    application = factory.application(tenant, job)

    w = SimpleNamespace(
        factory=factory,
        tenant=tenant,
        other=other,
        hr=hr,
        admin=admin,
        interviewer=interviewer,
        other_admin=other_admin,
        pipeline=pipeline,
        stages=stages,
        job=job,
        application=application,
        hr_headers=factory.headers(hr),
        admin_headers=factory.headers(admin),
        interviewer_headers=factory.headers(interviewer),
        other_headers=factory.headers(other_admin),
    )

    def attach(app_row=None):
        target = app_row or application
        return transition_engine.attach_application(tenant.id, target.id, actor_id=hr.id)

    w.attach = attach
    return w


@pytest.fixture()
def world(factory):
    """Tenant A with HR / admin / interviewer users, a seeded three-stage
    pipeline and one unattached application; tenant B with its own admin."""
    return _build_world(factory)


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """Testing app on a file-backed SQLite database.

    Each app context gets its own session and pooled connection, so two
    contexts behave as two concurrent clients of the same database.
    """
    monkeypatch.setattr(
        TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'tracker.db'}",
    )
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture()
def file_world(file_app):
    """Same layout as ``world``, stored in the file-backed database."""
    return _build_world(Factory())
