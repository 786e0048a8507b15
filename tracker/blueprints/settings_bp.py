"""
Tracking settings blueprint - the tenant's status and action catalog.

Routes (all under /api/v1/settings):
  GET    /statuses                – active statuses
  POST   /statuses                – create (or reactivate) a status
  PATCH  /statuses/<status_id>    – partial update
  DELETE /statuses/<status_id>    – soft delete (refused while in use)
  GET    /actions                 – stage actions (?stageId= / ?pipelineId=)
  POST   /actions                 – configure an action on a stage
  PATCH  /actions/<action_id>     – partial update
  GET    /capabilities            – role → capabilities of the tenant
"""

from flask import Blueprint, jsonify, request

from tracker.auth import SETTINGS_WRITERS, require_roles
from tracker.blueprints import current_tenant_id, json_body
from tracker.services import catalog_service
from tracker.services.capability_service import list_capabilities_by_role
from tracker.utils.errors import register_error_handlers
from tracker.utils.helpers import require_uuid

settings_bp = Blueprint("settings", __name__, url_prefix="/api/v1/settings")
register_error_handlers(settings_bp)


# ── Statuses ─────────────────────────────────────────────────────────────────

@settings_bp.route("/statuses", methods=["GET"])
@require_roles()
def list_statuses():
    return jsonify({"data": catalog_service.list_statuses(current_tenant_id())})


@settings_bp.route("/statuses", methods=["POST"])
@require_roles(*SETTINGS_WRITERS)
def create_status():
    """Body: { status_code, display_name, action_code?, outcome_type?, is_terminal?,
    sort_order?, color_hex? }"""
    row = catalog_service.create_status(current_tenant_id(), json_body())
    return jsonify({"data": row}), 201


@settings_bp.route("/statuses/<status_id>", methods=["PATCH"])
@require_roles(*SETTINGS_WRITERS)
def update_status(status_id):
    require_uuid(status_id, "status id")
    row = catalog_service.update_status(current_tenant_id(), status_id, json_body())
    return jsonify({"data": row})


@settings_bp.route("/statuses/<status_id>", methods=["DELETE"])
@require_roles(*SETTINGS_WRITERS)
def delete_status(status_id):
    require_uuid(status_id, "status id")
    row = catalog_service.delete_status(current_tenant_id(), status_id)
    return jsonify({"data": row})


# ── Stage actions ────────────────────────────────────────────────────────────

@settings_bp.route("/actions", methods=["GET"])
@require_roles()
def list_actions():
    stage_id = request.args.get("stageId") or request.args.get("stage_id")
    pipeline_id = request.args.get("pipelineId") or request.args.get("pipeline_id")
    if stage_id:
        require_uuid(stage_id, "stage id")
    if pipeline_id:
        require_uuid(pipeline_id, "pipeline id")
    rows = catalog_service.list_stage_actions(
        current_tenant_id(), stage_id=stage_id, pipeline_id=pipeline_id,
    )
    return jsonify({"data": rows})


@settings_bp.route("/actions", methods=["POST"])
@require_roles(*SETTINGS_WRITERS)
def create_action():
    """Body: { stage_id, action_code, display_name, outcome_type?, moves_to_next_stage?,
    is_terminal?, requires_feedback?, requires_notes?, required_capability?,
    signal_conditions?, sort_order? }"""
    data = json_body()
    require_uuid(data.get("stage_id") or data.get("stageId"), "stage_id")
    row = catalog_service.create_stage_action(current_tenant_id(), data)
    return jsonify({"data": row}), 201


@settings_bp.route("/actions/<action_id>", methods=["PATCH"])
@require_roles(*SETTINGS_WRITERS)
def update_action(action_id):
    require_uuid(action_id, "action id")
    row = catalog_service.update_stage_action(current_tenant_id(), action_id, json_body())
    return jsonify({"data": row})


# ── Capabilities ─────────────────────────────────────────────────────────────

@settings_bp.route("/capabilities", methods=["GET"])
@require_roles()
def list_capabilities():
    return jsonify({"data": list_capabilities_by_role(current_tenant_id())})
