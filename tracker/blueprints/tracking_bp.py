"""
Pipeline tracking blueprint.

Routes (all under /api/v1):
  POST   /applications/<app_id>/attach         – place an application at stage 0
  GET    /applications/<app_id>                – current state projection
  GET    /applications/<app_id>/actions        – action menu for the caller
  POST   /applications/<app_id>/act            – execute a stage action
  POST   /applications/<app_id>/move           – direct stage move
  PATCH  /applications/<app_id>/status         – direct status update
  GET    /applications/<app_id>/history        – transition history (paginated)
  GET    /applications/<app_id>/decision-log   – execution log (paginated)
  GET    /pipelines/<pipeline_id>/board        – kanban board
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from tracker.auth import TRACKING_WRITERS, require_roles
from tracker.blueprints import (
    current_capabilities,
    current_tenant_id,
    current_user_id,
    json_body,
)
from tracker.core.exceptions import ValidationError
from tracker.services import action_menu_service, tracking_query_service, transition_engine
from tracker.utils.errors import register_error_handlers
from tracker.utils.helpers import pagination_args, require_uuid

logger = logging.getLogger(__name__)

tracking_bp = Blueprint("tracking", __name__, url_prefix="/api/v1")
register_error_handlers(tracking_bp)


def _history_page():
    return pagination_args(default_limit=50, max_limit=current_app.config.get("HISTORY_MAX_LIMIT", 100))


# ═════════════════════════════════════════════════════════════════════════════
# State
# ═════════════════════════════════════════════════════════════════════════════

@tracking_bp.route("/applications/<app_id>/attach", methods=["POST"])
@require_roles(*TRACKING_WRITERS, allow_service=True)
def attach(app_id):
    """Attach an application to its job's pipeline (or an explicit one).

    Body: { pipeline_id? }  - service callers also send tenant_id
    """
    require_uuid(app_id, "application id")
    data = json_body()

    pipeline_id = data.get("pipeline_id") or data.get("pipelineId")
    if pipeline_id is not None:
        require_uuid(pipeline_id, "pipeline id")

    if g.is_service_call:
        try:
            tenant_id = int(data.get("tenant_id"))
        except (TypeError, ValueError):
            raise ValidationError("tenant_id is required for service calls")
    else:
        tenant_id = current_tenant_id()

    state = transition_engine.attach_application(
        tenant_id, app_id, pipeline_id=pipeline_id, actor_id=current_user_id(),
    )
    return jsonify({"data": state}), 201


@tracking_bp.route("/applications/<app_id>", methods=["GET"])
@require_roles()
def get_state(app_id):
    require_uuid(app_id, "application id")
    return jsonify({"data": transition_engine.get_state(current_tenant_id(), app_id)})


@tracking_bp.route("/applications/<app_id>/actions", methods=["GET"])
@require_roles()
def available_actions(app_id):
    """Actions the caller may take at the application's current stage."""
    require_uuid(app_id, "application id")
    menu = action_menu_service.get_available_actions(
        current_tenant_id(), app_id, current_capabilities(),
    )
    return jsonify({"data": menu})


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

@tracking_bp.route("/applications/<app_id>/act", methods=["POST"])
@require_roles()
def act(app_id):
    """Execute a stage action.

    Body: { action, notes?, override_reason?, reviewed_by?, approved_by? }
    """
    require_uuid(app_id, "application id")
    data = json_body()
    action = data.get("action") or data.get("action_code")
    if not action or not str(action).strip():
        raise ValidationError("action is required")

    state = transition_engine.execute_action(
        current_tenant_id(),
        app_id,
        str(action),
        actor_id=current_user_id(),
        capabilities=current_capabilities(),
        notes=data.get("notes"),
        override_reason=data.get("override_reason"),
        reviewed_by=data.get("reviewed_by"),
        approved_by=data.get("approved_by"),
    )
    return jsonify({"data": state})


@tracking_bp.route("/applications/<app_id>/move", methods=["POST"])
@require_roles(*TRACKING_WRITERS)
def move(app_id):
    """Move straight to a stage of the application's pipeline.

    Body: { to_stage_id, reason? }
    """
    require_uuid(app_id, "application id")
    data = json_body()
    to_stage_id = require_uuid(data.get("to_stage_id") or data.get("toStageId"), "to_stage_id")

    state = transition_engine.move_application(
        current_tenant_id(), app_id,
        to_stage_id=to_stage_id, actor_id=current_user_id(), reason=data.get("reason"),
    )
    return jsonify({"data": state})


@tracking_bp.route("/applications/<app_id>/status", methods=["PATCH"])
@require_roles(*TRACKING_WRITERS)
def update_status(app_id):
    """Set a catalog status directly.

    Body: { status, reason? }
    """
    require_uuid(app_id, "application id")
    data = json_body()
    state = transition_engine.update_application_status(
        current_tenant_id(), app_id,
        status_code=data.get("status"), actor_id=current_user_id(), reason=data.get("reason"),
    )
    return jsonify({"data": state})


# ═════════════════════════════════════════════════════════════════════════════
# Readers
# ═════════════════════════════════════════════════════════════════════════════

@tracking_bp.route("/applications/<app_id>/history", methods=["GET"])
@require_roles()
def history(app_id):
    require_uuid(app_id, "application id")
    limit, offset = _history_page()
    page = tracking_query_service.get_history(current_tenant_id(), app_id, limit=limit, offset=offset)
    return jsonify(page)


@tracking_bp.route("/applications/<app_id>/decision-log", methods=["GET"])
@require_roles()
def decision_log(app_id):
    """Execution log with signal snapshots and the accountability chain."""
    require_uuid(app_id, "application id")
    limit, offset = _history_page()
    page = tracking_query_service.get_decision_log(
        current_tenant_id(), app_id,
        limit=limit, offset=offset,
        outcome_type=request.args.get("outcome_type"),
        action_code=request.args.get("action_code"),
    )
    return jsonify(page)


@tracking_bp.route("/pipelines/<pipeline_id>/board", methods=["GET"])
@require_roles()
def board(pipeline_id):
    require_uuid(pipeline_id, "pipeline id")
    job_id = request.args.get("jobId") or request.args.get("job_id")
    if job_id:
        require_uuid(job_id, "job id")
    data = tracking_query_service.get_board(
        current_tenant_id(), pipeline_id,
        status=request.args.get("status"), job_id=job_id,
    )
    return jsonify({"data": data})
