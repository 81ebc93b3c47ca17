"""
Corrective Action Blueprint.

Endpoints:
  POST  /corrective-actions                           - create (QI staff)
  GET   /corrective-actions/<id>
  PATCH /corrective-actions/<id>                      - checklist, action_taken (+ QI fields)
  POST  /corrective-actions/<id>/checklist/<item_id>  - toggle, or { "completed": bool }
  POST  /corrective-actions/<id>/close                - QI staff

Shared-access action handlers pass ``?token=<share token>``.
"""

from flask import Blueprint, jsonify

from ovr.auth import current_auth, require_auth, require_user
from ovr.core.exceptions import ValidationError
from ovr.services import corrective_action_service
from ovr.utils.helpers import get_json_body

corrective_action_bp = Blueprint(
    "corrective_actions", __name__, url_prefix="/api/v1/corrective-actions"
)


@corrective_action_bp.route("", methods=["POST"])
@require_user
def create_action():
    """
    Body: { "incident_id", "title", "description", "due_date",
            "checklist": [str | {"text"}], "assignee_ids"?: [int] }
    Returns: { "action": {...}, "transition": {...} | null } (201)
    """
    result = corrective_action_service.create_action(get_json_body(), current_auth())
    return jsonify(result), 201


@corrective_action_bp.route("/<int:action_id>", methods=["GET"])
@require_auth
def get_action(action_id: int):
    ctx = current_auth()
    action = corrective_action_service.get_action(action_id, ctx)
    return jsonify(corrective_action_service.action_detail(action, ctx)), 200


@corrective_action_bp.route("/<int:action_id>", methods=["PATCH"])
@require_auth
def update_action(action_id: int):
    ctx = current_auth()
    action = corrective_action_service.update_action(action_id, get_json_body(), ctx)
    return jsonify(corrective_action_service.action_detail(action, ctx)), 200


@corrective_action_bp.route("/<int:action_id>/checklist/<item_id>", methods=["POST"])
@require_auth
def toggle_checklist_item(action_id: int, item_id: str):
    ctx = current_auth()
    completed = get_json_body().get("completed")
    if completed is not None and not isinstance(completed, bool):
        raise ValidationError("completed must be a boolean", details={"completed": "must be a boolean"})
    action = corrective_action_service.toggle_checklist_item(action_id, item_id, ctx, completed)
    return jsonify(corrective_action_service.action_detail(action, ctx)), 200


@corrective_action_bp.route("/<int:action_id>/close", methods=["POST"])
@require_user
def close_action(action_id: int):
    """Body: { "action_taken"?: str }"""
    ctx = current_auth()
    action = corrective_action_service.close_action(action_id, ctx, get_json_body())
    return jsonify(corrective_action_service.action_detail(action, ctx)), 200
