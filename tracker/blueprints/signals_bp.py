"""
Signals & evaluations blueprint.

Routes (all under /api/v1):
  GET    /applications/<app_id>/signals                 – current signals (?include_history=)
  POST   /applications/<app_id>/signals                 – record a manual signal
  GET    /applications/<app_id>/signals/<key>/history   – every value of one key
  GET    /applications/<app_id>/evaluations             – evaluation instances
  POST   /evaluations/<evaluation_id>/complete          – complete an evaluation
"""

from flask import Blueprint, jsonify, request

from tracker.auth import TRACKING_WRITERS, require_roles
from tracker.blueprints import current_tenant_id, current_user_id, json_body
from tracker.core.exceptions import ValidationError
from tracker.services import evaluation_service, signal_service
from tracker.utils.errors import register_error_handlers
from tracker.utils.helpers import parse_bool, require_uuid

signals_bp = Blueprint("signals", __name__, url_prefix="/api/v1")
register_error_handlers(signals_bp)


@signals_bp.route("/applications/<app_id>/signals", methods=["GET"])
@require_roles()
def list_signals(app_id):
    require_uuid(app_id, "application id")
    include_history = parse_bool(request.args.get("include_history"))
    data = signal_service.list_signals(current_tenant_id(), app_id, include_history=include_history)
    return jsonify({"data": data})


@signals_bp.route("/applications/<app_id>/signals", methods=["POST"])
@require_roles(*TRACKING_WRITERS)
def set_signal(app_id):
    """Body: { signal_key, signal_type, value, note? }"""
    require_uuid(app_id, "application id")
    data = json_body()
    if "value" not in data:
        raise ValidationError("value is required")
    row = signal_service.set_manual_signal(
        current_tenant_id(),
        app_id,
        signal_key=data.get("signal_key") or data.get("signalKey"),
        signal_type=data.get("signal_type") or data.get("signalType"),
        value=data.get("value"),
        user_id=current_user_id(),
        note=data.get("note"),
    )
    return jsonify({"data": row}), 201


@signals_bp.route("/applications/<app_id>/signals/<key>/history", methods=["GET"])
@require_roles()
def signal_history(app_id, key):
    require_uuid(app_id, "application id")
    return jsonify({"data": signal_service.get_signal_history(current_tenant_id(), app_id, key)})


@signals_bp.route("/applications/<app_id>/evaluations", methods=["GET"])
@require_roles()
def list_evaluations(app_id):
    require_uuid(app_id, "application id")
    return jsonify({"data": evaluation_service.list_application_evaluations(current_tenant_id(), app_id)})


@signals_bp.route("/evaluations/<evaluation_id>/complete", methods=["POST"])
@require_roles(*TRACKING_WRITERS)
def complete_evaluation(evaluation_id):
    """Body: { force?, force_note? }"""
    require_uuid(evaluation_id, "evaluation id")
    data = json_body()
    result = evaluation_service.complete_evaluation(
        current_tenant_id(),
        evaluation_id,
        actor_id=current_user_id(),
        force=parse_bool(data.get("force")),
        force_note=data.get("force_note"),
    )
    return jsonify({"data": result})
