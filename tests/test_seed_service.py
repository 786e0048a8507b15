"""Default catalog seeding (service + ``flask seed-tracking-defaults``)."""

from tracker.models import db
from tracker.models.auth import RoleCapability
from tracker.models.tracking import TenantApplicationStatus, TenantStageAction
from tracker.services import seed_service


def _counts(tenant_id):
    return (
        TenantApplicationStatus.query.filter_by(tenant_id=tenant_id).count(),
        RoleCapability.query.filter_by(tenant_id=tenant_id).count(),
        TenantStageAction.query.filter_by(tenant_id=tenant_id).count(),
    )


def test_seed_is_idempotent(factory):
    tenant = factory.tenant(seed=False)
    factory.pipeline(tenant, seed_actions=False)

    first = seed_service.seed_tenant_defaults(tenant.id)
    db.session.commit()
    # 3 stages: ADVANCE on two, REJECT/HOLD/ACTIVATE on all, HIRE on the offer stage
    assert first == {"statuses": 5, "capabilities": 10, "actions": 12}

    before = _counts(tenant.id)
    second = seed_service.seed_tenant_defaults(tenant.id)
    db.session.commit()
    assert second == {"statuses": 0, "capabilities": 0, "actions": 0}
    assert _counts(tenant.id) == before


def test_seed_keeps_customised_rows(factory):
    tenant = factory.tenant(seed=False)
    factory.status(tenant, "ACTIVE", "ACTIVE", sort_order=1, action_code="RESUME")

    seed_service.seed_default_statuses(tenant.id)
    db.session.commit()

    row = TenantApplicationStatus.query.filter_by(tenant_id=tenant.id, status_code="ACTIVE").one()
    assert row.action_code == "RESUME"
    assert TenantApplicationStatus.query.filter_by(tenant_id=tenant.id).count() == 5


def test_interview_advance_requires_feedback(factory):
    tenant = factory.tenant()
    pipeline = factory.pipeline(tenant)
    stages = {s.stage_type: s for s in pipeline.stages}

    advance = TenantStageAction.query.filter_by(stage_id=stages["interview"].id, action_code="ADVANCE").one()
    assert advance.requires_feedback is True
    screening = TenantStageAction.query.filter_by(stage_id=stages["screening"].id, action_code="ADVANCE").one()
    assert screening.requires_feedback is False
    assert TenantStageAction.query.filter_by(stage_id=stages["offer"].id, action_code="ADVANCE").count() == 0


def test_cli_command(app, factory):
    tenant = factory.tenant(seed=False)
    runner = app.test_cli_runner()
    result = runner.invoke(args=["seed-tracking-defaults", "--tenant-id", str(tenant.id)])
    assert result.exit_code == 0
    assert f"Seeded tenant {tenant.id}" in result.output
    assert TenantApplicationStatus.query.filter_by(tenant_id=tenant.id).count() == 5
