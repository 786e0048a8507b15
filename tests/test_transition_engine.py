"""
Transition engine - service-level tests.

Tests cover:
  - attach: first stage, initial status, conflicts, pipeline resolution
  - execute_action gates in order: terminal, action, capability, notes,
    HOLD/ACTIVATE, evaluations, signals, feedback, reviewer/approver
  - destination resolution, idempotent no-op, override policy
  - exactly one history row + one log row per committed transition
  - legacy move / status update
  - optimistic-lock retry
"""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from tracker.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from tracker.models import db
from tracker.models.evaluation import EvaluationInstance
from tracker.models.tracking import (
    ActionExecutionLog,
    ApplicationPipelineState,
    ApplicationStageHistory,
)
from tracker.services import evaluation_service, signal_service, transition_engine
from tracker.services.capability_service import resolve_capabilities
from tracker.services.signal_conditions import validate_signal_conditions
from tracker.services.tracking_query_service import load_state


def _act(w, code, role="HR", actor=None, **kwargs):
    return transition_engine.execute_action(
        w.tenant.id,
        w.application.id,
        code,
        actor_id=(actor or w.hr).id,
        capabilities=resolve_capabilities(w.tenant.id, role),
        **kwargs,
    )


def _counts(application_id):
    history = ApplicationStageHistory.query.filter_by(application_id=application_id).count()
    log = ActionExecutionLog.query.filter_by(application_id=application_id).count()
    return history, log


# ═══════════════════════════════════════════════════════════════
# Attach
# ═══════════════════════════════════════════════════════════════

class TestAttach:

    def test_places_application_at_first_stage(self, world):
        state = world.attach()

        assert state["applicationId"] == world.application.id
        assert state["pipelineId"] == world.pipeline.id
        assert state["currentStageName"] == "Applied"
        assert state["currentStageIndex"] == 0
        assert state["status"] == "ACTIVE"
        assert state["outcomeType"] == "ACTIVE"
        assert state["isTerminal"] is False

    def test_writes_one_history_and_one_log_row(self, world):
        world.attach()

        history = ApplicationStageHistory.query.filter_by(application_id=world.application.id).all()
        log = ActionExecutionLog.query.filter_by(application_id=world.application.id).all()
        assert len(history) == 1 and len(log) == 1
        assert history[0].from_stage_id is None
        assert history[0].to_stage_id == world.stages[0].id
        assert history[0].action == "MOVE"
        assert log[0].action_code == "ATTACH"
        assert log[0].executed_by == world.hr.id

    def test_second_attach_conflicts(self, world):
        world.attach()
        with pytest.raises(ConflictError):
            world.attach()
        assert ApplicationPipelineState.query.filter_by(application_id=world.application.id).count() == 1
        assert _counts(world.application.id) == (1, 1)

    def test_job_without_pipeline(self, world):
        job = world.factory.job(world.tenant)
        application = world.factory.application(world.tenant, job)
        with pytest.raises(NotFoundError, match="No pipeline assigned"):
            world.attach(application)

    def test_explicit_pipeline_of_other_tenant(self, world):
        foreign = world.factory.pipeline(world.other, name="Globex Pipeline")
        with pytest.raises(ForbiddenError) as exc:
            transition_engine.attach_application(
                world.tenant.id, world.application.id, pipeline_id=foreign.id,
            )
        assert exc.value.code == "TENANT_MISMATCH"

    def test_global_pipeline_is_usable(self, world):
        shared = world.factory.pipeline(None, name="Global")
        state = transition_engine.attach_application(
            world.tenant.id, world.application.id, pipeline_id=shared.id,
        )
        assert state["pipelineId"] == shared.id

    def test_pipeline_without_stages(self, world):
        empty = world.factory.pipeline(world.tenant, stages=(), name="Empty")
        with pytest.raises(NotFoundError, match="no stages"):
            transition_engine.attach_application(
                world.tenant.id, world.application.id, pipeline_id=empty.id,
            )

    def test_application_of_other_tenant_is_not_found(self, world):
        with pytest.raises(NotFoundError):
            transition_engine.attach_application(world.other.id, world.application.id)

    def test_falls_back_to_active_without_catalog(self, factory):
        tenant = factory.tenant(seed=False)
        pipeline = factory.pipeline(tenant, seed_actions=False)
        application = factory.application(tenant, factory.job(tenant, pipeline))

        state = transition_engine.attach_application(tenant.id, application.id)
        assert state["status"] == "ACTIVE"
        assert state["outcomeType"] == "ACTIVE"

    def test_creates_auto_evaluations_for_first_stage(self, world):
        template = world.factory.template(world.tenant)
        world.factory.stage_evaluation(world.tenant, world.stages[0], template)

        world.attach()

        instances = EvaluationInstance.query.filter_by(application_id=world.application.id).all()
        assert len(instances) == 1
        assert instances[0].status == "PENDING"
        assert instances[0].stage_id == world.stages[0].id


# ═══════════════════════════════════════════════════════════════
# Execute action
# ═══════════════════════════════════════════════════════════════

class TestExecuteAction:

    def test_advance_moves_to_next_stage(self, world):
        before = world.attach()
        state = _act(world, "advance")

        assert state["currentStageName"] == "Interview"
        assert state["status"] == "ACTIVE"
        assert state["enteredStageAt"] >= before["enteredStageAt"]
        assert _counts(world.application.id) == (2, 2)

        entry = (ActionExecutionLog.query.filter_by(application_id=world.application.id)
                 .order_by(ActionExecutionLog.id.desc()).first())
        assert entry.action_code == "ADVANCE"
        assert entry.stage_id == world.stages[1].id
        assert entry.from_stage_id == world.stages[0].id
        assert entry.to_stage_id == world.stages[1].id

    def test_unknown_action(self, world):
        world.attach()
        with pytest.raises(TransitionError) as exc:
            _act(world, "PROMOTE")
        assert exc.value.code == "INVALID_ACTION"

    def test_action_of_another_stage_is_not_available(self, world):
        world.attach()
        with pytest.raises(TransitionError):
            _act(world, "HIRE")

    def test_missing_capability(self, world):
        world.attach()
        with pytest.raises(ForbiddenError) as exc:
            _act(world, "ADVANCE", role="INTERVIEWER", actor=world.interviewer)
        assert exc.value.code == "FORBIDDEN"
        assert _counts(world.application.id) == (1, 1)

    def test_free_text_fields_must_be_strings(self, world):
        world.attach()
        for bad in (True, {}, ["late"], 5):
            with pytest.raises(ValidationError, match="notes must be a string"):
                _act(world, "REJECT", notes=bad)
        with pytest.raises(ValidationError, match="override_reason must be a string"):
            _act(world, "ADVANCE", override_reason={"why": "CEO"})
        with pytest.raises(ValidationError, match="reason must be a string"):
            transition_engine.move_application(
                world.tenant.id, world.application.id, to_stage_id=world.stages[1].id,
                actor_id=world.hr.id, reason=False,
            )
        assert _counts(world.application.id) == (1, 1)

    def test_reject_requires_notes(self, world):
        world.attach()
        with pytest.raises(ValidationError):
            _act(world, "REJECT")
        state = _act(world, "REJECT", notes="Not a fit for the role")
        assert state["status"] == "REJECTED"
        assert state["outcomeType"] == "FAILURE"
        assert state["isTerminal"] is True

    def test_terminal_lockout_on_every_path(self, world):
        world.attach()
        _act(world, "REJECT", notes="Position filled")
        counts = _counts(world.application.id)

        with pytest.raises(ForbiddenError) as exc:
            _act(world, "ADVANCE")
        assert exc.value.code == "TERMINAL_STATUS"
        with pytest.raises(ForbiddenError) as exc:
            _act(world, "ADVANCE", override_reason="CEO request")
        assert exc.value.code == "TERMINAL_STATUS"
        with pytest.raises(ForbiddenError) as exc:
            transition_engine.move_application(
                world.tenant.id, world.application.id, to_stage_id=world.stages[2].id, actor_id=world.hr.id,
            )
        assert exc.value.code == "TERMINAL_STATUS"
        with pytest.raises(ForbiddenError) as exc:
            transition_engine.update_application_status(
                world.tenant.id, world.application.id, status_code="ACTIVE", actor_id=world.hr.id,
            )
        assert exc.value.code == "TERMINAL_STATUS"

        assert _counts(world.application.id) == counts
        assert load_state(world.tenant.id, world.application.id).status == "REJECTED"

    def test_hold_and_activate_guard(self, world):
        world.attach()
        with pytest.raises(TransitionError):
            _act(world, "ACTIVATE")

        state = _act(world, "HOLD")
        assert state["status"] == "ON_HOLD"
        assert state["outcomeType"] == "HOLD"

        with pytest.raises(TransitionError):
            _act(world, "HOLD")

        state = _act(world, "ACTIVATE")
        assert state["status"] == "ACTIVE"
        assert state["outcomeType"] == "ACTIVE"

    def test_hire_uses_first_matching_status(self, world):
        """Acme defines OFFER_ACCEPTED ahead of HIRED; HIRE lands on it."""
        world.factory.status(world.tenant, "OFFER_ACCEPTED", "SUCCESS", terminal=True,
                             sort_order=1, action_code="HIRE")
        world.attach()
        transition_engine.move_application(
            world.tenant.id, world.application.id, to_stage_id=world.stages[2].id, actor_id=world.hr.id,
        )

        state = _act(world, "HIRE")
        assert state["status"] == "OFFER_ACCEPTED"
        assert state["outcomeType"] == "SUCCESS"
        assert state["isTerminal"] is True

        with pytest.raises(ForbiddenError) as exc:
            _act(world, "HIRE")
        assert exc.value.code == "TERMINAL_STATUS"

    def test_missing_status_for_outcome(self, world):
        world.factory.action(world.tenant, world.stages[0], "PARK", outcome_type="NEUTRAL")
        world.attach()
        with pytest.raises(TransitionError) as exc:
            _act(world, "PARK")
        assert exc.value.code == "INVALID_STATUS"

    def test_advance_from_last_stage(self, world):
        world.factory.action(world.tenant, world.stages[2], "ADVANCE", moves_to_next_stage=True)
        world.attach()
        transition_engine.move_application(
            world.tenant.id, world.application.id, to_stage_id=world.stages[2].id, actor_id=world.hr.id,
        )
        with pytest.raises(TransitionError, match="last stage"):
            _act(world, "ADVANCE")

    def test_noop_writes_nothing(self, world):
        world.factory.action(world.tenant, world.stages[0], "ACKNOWLEDGE")
        before = world.attach()

        state = _act(world, "ACKNOWLEDGE")
        assert state["currentStageId"] == before["currentStageId"]
        assert state["status"] == before["status"]
        assert _counts(world.application.id) == (1, 1)

    def test_not_attached(self, world):
        with pytest.raises(NotFoundError):
            _act(world, "ADVANCE")

    def test_tenant_mismatch(self, world):
        world.attach()
        with pytest.raises(ForbiddenError) as exc:
            transition_engine.execute_action(
                world.other.id, world.application.id, "ADVANCE",
                actor_id=world.other_admin.id,
                capabilities=resolve_capabilities(world.other.id, "ADMIN"),
            )
        assert exc.value.code == "TENANT_MISMATCH"

    def test_empty_action_code(self, world):
        world.attach()
        with pytest.raises(ValidationError):
            _act(world, "  ")


class TestGates:

    def test_feedback_required(self, world):
        world.attach()
        _act(world, "ADVANCE")  # → Interview, whose ADVANCE requires feedback

        with pytest.raises(ForbiddenError) as exc:
            _act(world, "ADVANCE")
        assert exc.value.code == "FEEDBACK_REQUIRED"

        world.factory.feedback(world.tenant, world.application, "Interview", user=world.interviewer)
        state = _act(world, "ADVANCE")
        assert state["currentStageName"] == "Offer"

    def test_override_bypasses_feedback(self, world):
        world.attach()
        _act(world, "ADVANCE")
        state = _act(world, "ADVANCE", override_reason="Panel feedback given verbally")
        assert state["currentStageName"] == "Offer"

        entry = (ActionExecutionLog.query.filter_by(application_id=world.application.id)
                 .order_by(ActionExecutionLog.id.desc()).first())
        assert entry.override_reason == "Panel feedback given verbally"

    def test_evaluations_incomplete(self, world):
        template = world.factory.template(world.tenant, name="Screening Call")
        world.factory.stage_evaluation(world.tenant, world.stages[0], template)
        world.attach()

        with pytest.raises(ForbiddenError) as exc:
            _act(world, "ADVANCE")
        assert exc.value.code == "EVALUATIONS_INCOMPLETE"
        assert exc.value.details["requiredEvaluations"][0]["templateName"] == "Screening Call"

        instance = EvaluationInstance.query.filter_by(application_id=world.application.id).one()
        instance.status = "COMPLETED"
        db.session.commit()

        assert _act(world, "ADVANCE")["currentStageName"] == "Interview"

    def test_override_bypasses_evaluations(self, world):
        template = world.factory.template(world.tenant)
        world.factory.stage_evaluation(world.tenant, world.stages[0], template)
        world.attach()

        state = _act(world, "ADVANCE", override_reason="Evaluator on leave")
        assert state["currentStageName"] == "Interview"

    def test_signals_not_met(self, world):
        world.factory.action(
            world.tenant, world.stages[0], "FAST_TRACK", moves_to_next_stage=True,
            signal_conditions=validate_signal_conditions({"conditions": [
                {"signal": "TECH_SCORE", "operator": ">=", "value": 4},
            ]}),
        )
        world.attach()

        with pytest.raises(ForbiddenError) as exc:
            _act(world, "FAST_TRACK")
        assert exc.value.code == "SIGNALS_NOT_MET"
        assert exc.value.details["failedConditions"] == ["TECH_SCORE >= 4 (actual: missing)"]

        signal_service.set_manual_signal(
            world.tenant.id, world.application.id,
            signal_key="tech_score", signal_type="integer", value=5, user_id=world.hr.id,
        )
        state = _act(world, "FAST_TRACK")
        assert state["currentStageName"] == "Interview"

        entry = (ActionExecutionLog.query.filter_by(application_id=world.application.id)
                 .order_by(ActionExecutionLog.id.desc()).first())
        assert entry.signal_snapshot["TECH_SCORE"]["value"] == 5
        assert entry.conditions_evaluated == [
            {"signal": "TECH_SCORE", "operator": ">=", "expected": 4, "actual": 5, "met": True},
        ]

    def test_override_bypasses_signals(self, world):
        world.factory.action(
            world.tenant, world.stages[0], "FAST_TRACK", moves_to_next_stage=True,
            signal_conditions=validate_signal_conditions({"conditions": [
                {"signal": "BACKGROUND_CHECK", "operator": "=", "value": True},
            ]}),
        )
        world.attach()
        state = _act(world, "FAST_TRACK", override_reason="Check waived by legal")
        assert state["currentStageName"] == "Interview"

    def test_warn_condition_requires_a_note(self, world):
        world.factory.action(
            world.tenant, world.stages[0], "FAST_TRACK", moves_to_next_stage=True,
            signal_conditions=validate_signal_conditions({"conditions": [
                {"signal": "REFERENCES", "operator": "=", "value": True, "onMissing": "WARN"},
            ]}),
        )
        world.attach()

        with pytest.raises(ValidationError, match="REFERENCES"):
            _act(world, "FAST_TRACK")
        state = _act(world, "FAST_TRACK", notes="References pending, hiring manager aware")
        assert state["currentStageName"] == "Interview"

    def test_override_capability_when_configured(self, app, world, monkeypatch):
        monkeypatch.setitem(app.config, "TRACKING_OVERRIDE_CAPABILITY", "pipeline:override")
        world.attach()
        _act(world, "ADVANCE")

        with pytest.raises(ForbiddenError) as exc:
            _act(world, "ADVANCE", override_reason="Skip feedback")
        assert exc.value.code == "FORBIDDEN"

        # ADMIN holds pipeline:* which covers pipeline:override
        state = _act(world, "ADVANCE", role="ADMIN", actor=world.admin, override_reason="Skip feedback")
        assert state["currentStageName"] == "Offer"

    def test_reviewer_and_approver_must_belong_to_tenant(self, world):
        world.attach()
        with pytest.raises(ValidationError, match="reviewed_by"):
            _act(world, "ADVANCE", reviewed_by=world.other_admin.id)
        with pytest.raises(ValidationError, match="approved_by"):
            _act(world, "ADVANCE", approved_by="not-a-user")

        _act(world, "ADVANCE", reviewed_by=world.admin.id, approved_by=world.admin.id)
        entry = (ActionExecutionLog.query.filter_by(application_id=world.application.id)
                 .order_by(ActionExecutionLog.id.desc()).first())
        assert entry.reviewed_by == world.admin.id
        assert entry.approved_by == world.admin.id


# ═══════════════════════════════════════════════════════════════
# Legacy paths
# ═══════════════════════════════════════════════════════════════

class TestLegacyPaths:

    def test_move_to_any_stage(self, world):
        world.attach()
        state = transition_engine.move_application(
            world.tenant.id, world.application.id,
            to_stage_id=world.stages[2].id, actor_id=world.hr.id, reason="Referral",
        )
        assert state["currentStageName"] == "Offer"

        history = (ApplicationStageHistory.query.filter_by(application_id=world.application.id)
                   .order_by(ApplicationStageHistory.id.desc()).first())
        assert history.action == "MOVE"
        assert history.reason == "Referral"
        assert history.from_stage_id == world.stages[0].id
        assert _counts(world.application.id) == (2, 2)

    def test_move_to_same_stage_is_noop(self, world):
        world.attach()
        transition_engine.move_application(
            world.tenant.id, world.application.id, to_stage_id=world.stages[0].id, actor_id=world.hr.id,
        )
        assert _counts(world.application.id) == (1, 1)

    def test_move_to_foreign_stage(self, world):
        world.attach()
        other_pipeline = world.factory.pipeline(world.tenant, name="Other", seed_actions=False)
        with pytest.raises(TransitionError) as exc:
            transition_engine.move_application(
                world.tenant.id, world.application.id,
                to_stage_id=other_pipeline.stages[1].id, actor_id=world.hr.id,
            )
        assert exc.value.code == "INVALID_STAGE"

    def test_status_update(self, world):
        world.attach()
        state = transition_engine.update_application_status(
            world.tenant.id, world.application.id, status_code="on_hold", actor_id=world.hr.id,
        )
        assert state["status"] == "ON_HOLD"
        assert state["outcomeType"] == "HOLD"
        assert state["currentStageName"] == "Applied"

        history = (ApplicationStageHistory.query.filter_by(application_id=world.application.id)
                   .order_by(ApplicationStageHistory.id.desc()).first())
        assert history.action == "HOLD"
        assert history.from_stage_id == history.to_stage_id == world.stages[0].id

        state = transition_engine.update_application_status(
            world.tenant.id, world.application.id, status_code="HIRED", actor_id=world.hr.id,
        )
        assert state["isTerminal"] is True

    def test_status_update_unknown_or_same(self, world):
        world.attach()
        with pytest.raises(TransitionError) as exc:
            transition_engine.update_application_status(
                world.tenant.id, world.application.id, status_code="GHOSTED", actor_id=world.hr.id,
            )
        assert exc.value.code == "INVALID_STATUS"

        transition_engine.update_application_status(
            world.tenant.id, world.application.id, status_code="ACTIVE", actor_id=world.hr.id,
        )
        assert _counts(world.application.id) == (1, 1)


# ═══════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════

class TestRetry:

    def test_stale_write_is_retried_once(self, world):
        world.attach()
        calls = []

        def work():
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("version mismatch")
            return load_state(world.tenant.id, world.application.id, for_update=True)

        result = transition_engine._run(work, tenant_id=world.tenant.id, application_id=world.application.id)
        assert len(calls) == 2
        assert result["applicationId"] == world.application.id

    def test_second_stale_write_is_a_conflict(self, world):
        world.attach()

        def work():
            raise StaleDataError("version mismatch")

        with pytest.raises(ConflictError):
            transition_engine._run(work, tenant_id=world.tenant.id, application_id=world.application.id)

    def test_version_bumps_on_each_transition(self, world):
        world.attach()
        first = load_state(world.tenant.id, world.application.id).version
        _act(world, "ADVANCE")
        assert load_state(world.tenant.id, world.application.id).version == first + 1


class TestConcurrentWriters:
    """Two app contexts on a file-backed database act as two clients. The
    competing write is committed from inside the engine's unit of work, after
    it has read the state row and before it writes."""

    @staticmethod
    def _once(func, before):
        fired = []

        def hooked(*args, **kwargs):
            if not fired:
                fired.append(True)
                before()
            return func(*args, **kwargs)

        return hooked

    def test_two_terminal_actions_exactly_one_wins(self, file_app, file_world, monkeypatch):
        w = file_world
        w.attach()
        tenant_id, app_id, hr_id = w.tenant.id, w.application.id, w.hr.id
        caps = resolve_capabilities(tenant_id, "HR")

        def reject_from_other_client():
            with file_app.app_context():
                transition_engine.execute_action(
                    tenant_id, app_id, "REJECT", actor_id=hr_id, capabilities=caps,
                    notes="Filled by another recruiter",
                )
                assert _counts(app_id) == (2, 2)

        monkeypatch.setattr(
            evaluation_service, "get_required_evaluations",
            self._once(evaluation_service.get_required_evaluations, reject_from_other_client),
        )

        with pytest.raises(ForbiddenError) as exc:
            transition_engine.execute_action(
                tenant_id, app_id, "REJECT", actor_id=hr_id, capabilities=caps, notes="Declined",
            )
        assert exc.value.code == "TERMINAL_STATUS"

        assert _counts(app_id) == (2, 2)
        state = load_state(tenant_id, app_id)
        assert state.status == "REJECTED"
        assert state.is_terminal is True
        notes = [row.decision_note for row in ActionExecutionLog.query.filter_by(application_id=app_id)]
        assert "Declined" not in notes
        assert "Filled by another recruiter" in notes

    def test_concurrent_attach_is_a_conflict(self, file_app, file_world, monkeypatch):
        w = file_world
        tenant_id, app_id, hr_id = w.tenant.id, w.application.id, w.hr.id

        def attach_from_other_client():
            with file_app.app_context():
                transition_engine.attach_application(tenant_id, app_id, actor_id=hr_id)

        monkeypatch.setattr(
            transition_engine, "_resolve_pipeline",
            self._once(transition_engine._resolve_pipeline, attach_from_other_client),
        )

        with pytest.raises(ConflictError, match="already attached"):
            transition_engine.attach_application(tenant_id, app_id, actor_id=hr_id)

        assert ApplicationPipelineState.query.filter_by(application_id=app_id).count() == 1
        assert _counts(app_id) == (1, 1)
