"""
Available-actions calculator.

Computes, for one application and one caller, the stage actions the UI
should offer and why the others are gated. Read-only: every gate shown here
is re-checked by the transition engine when the action is executed.
"""

import logging

from tracker.services import catalog_service, evaluation_service, signal_service
from tracker.services.capability_service import has_capability
from tracker.services.signal_conditions import evaluate_signal_conditions, menu_view
from tracker.services.tracking_query_service import load_state
from tracker.services.transition_engine import hold_guard_allows

logger = logging.getLogger(__name__)


def get_available_actions(tenant_id: int, application_id: str, capabilities) -> dict:
    """Actions offered at the application's current stage.

    Args:
        tenant_id: caller tenant.
        application_id: application UUID.
        capabilities: the caller's resolved capability set.

    Returns:
        {applicationId, currentStageId, currentStageName, currentStageType,
         status, outcomeType, isTerminal, evaluationsComplete,
         requiredEvaluations, availableActions}
    """
    state = load_state(tenant_id, application_id)
    stage = state.current_stage
    menu = {
        "applicationId": state.application_id,
        "currentStageId": stage.id,
        "currentStageName": stage.stage_name,
        "currentStageType": stage.stage_type,
        "status": state.status,
        "outcomeType": state.outcome_type,
        "isTerminal": state.is_terminal,
        "evaluationsComplete": None,
        "requiredEvaluations": [],
        "availableActions": [],
    }
    if state.is_terminal:
        return menu

    caps = set(capabilities or ())
    actions = [
        action for action in catalog_service.active_actions_for_stage(tenant_id, stage.id)
        if has_capability(caps, action.required_capability)
        and hold_guard_allows(action.outcome_type, state.outcome_type)
    ]

    breakdown = evaluation_service.get_required_evaluations(tenant_id, application_id, stage.id)
    menu["requiredEvaluations"] = breakdown
    menu["evaluationsComplete"] = evaluation_service.evaluations_complete(breakdown)

    snapshot = None
    feedback = None
    for action in actions:
        item = {
            "actionCode": action.action_code,
            "displayName": action.display_name,
            "outcomeType": action.outcome_type,
            "isTerminal": action.is_terminal,
            "movesToNextStage": action.moves_to_next_stage,
            "requiresFeedback": action.requires_feedback,
            "requiresNotes": action.requires_notes,
            "requiredCapability": action.required_capability,
            "feedbackSubmitted": True,
            "signalsMet": True,
        }

        spec = action.signal_conditions
        if spec and spec.get("conditions"):
            if snapshot is None:
                snapshot = signal_service.get_signal_snapshot(tenant_id, application_id)
            met, results = evaluate_signal_conditions(spec, snapshot)
            item["signalConditions"] = {
                "logic": spec.get("logic") or "ALL",
                "conditions": [menu_view(r) for r in results],
            }
            item["signalsMet"] = met

        if action.requires_feedback:
            if feedback is None:
                feedback = evaluation_service.feedback_submitted(
                    tenant_id, application_id, stage.stage_name
                )
            item["feedbackSubmitted"] = feedback

        menu["availableActions"].append(item)

    logger.debug(
        "Action menu app=%s stage=%s offered=%d", application_id, stage.stage_name,
        len(menu["availableActions"]), extra={"tenant_id": tenant_id},
    )
    return menu
