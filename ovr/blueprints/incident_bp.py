"""
Incident Blueprint.

Routes for incident reports and their workflow transitions.
All business logic is delegated to the service layer.

Endpoints:
  Incidents:     GET/POST          /incidents
                 GET               /incidents/export.xlsx
                 GET/PATCH/DELETE  /incidents/<id>
  Transitions:   POST /incidents/<id>/submit
                 POST /incidents/<id>/qi-review            {decision, rejection_reason?}
                 POST /incidents/<id>/begin-final-actions
                 POST /incidents/<id>/request-final-review
                 POST /incidents/<id>/close                {case_review, reporter_feedback}
                 POST /incidents/<id>/force-status         {status, reason}
                 POST /incidents/<id>/actions              {action, data?}
  Children:      GET  /incidents/<id>/history
                 GET  /incidents/<id>/corrective-actions
                 GET/POST /incidents/<id>/comments          {comment}
                 DELETE   /incidents/<id>/comments/<comment_id>

Every transition body may carry ``expected_version``.
"""

import logging

from flask import Blueprint, Response, jsonify, request

from ovr.auth import current_auth, require_auth, require_user
from ovr.core.exceptions import ValidationError
from ovr.services import (
    comment_service,
    corrective_action_service,
    export_service,
    incident_service,
    investigation_service,
)
from ovr.services.incident_lifecycle import VALID_ACTIONS, transition_incident
from ovr.utils.helpers import expected_version, get_json_body

logger = logging.getLogger(__name__)

incident_bp = Blueprint("incidents", __name__, url_prefix="/api/v1/incidents")

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

QI_DECISIONS = {
    "approve": "qi_review.approve",
    "reject": "qi_review.reject",
}


def _run_transition(incident_id: str, action: str, data: dict):
    """Visibility check, transition, then the refreshed incident."""
    ctx = current_auth()
    incident_service.get_visible_incident(incident_id, ctx)
    result = transition_incident(
        incident_id, action, ctx, data, expected_version=expected_version(data)
    )
    incident = incident_service.get_visible_incident(incident_id, ctx)
    return jsonify({
        "transition": result,
        "incident": incident_service.incident_detail(incident, ctx),
    }), 200


# ═════════════════════════════════════════════════════════════════════════════
# Incident CRUD
# ═════════════════════════════════════════════════════════════════════════════


@incident_bp.route("", methods=["GET"])
@require_auth
def list_incidents():
    """List incidents the caller may see.

    Query params: page, limit, sort_by, sort_order, status (comma separated),
                  category, reporter_id, search
    Returns: { "data": [...], "pagination": {...} }
    """
    result = incident_service.list_incidents(current_auth(), request.args.to_dict())
    return jsonify(result), 200


@incident_bp.route("", methods=["POST"])
@require_user
def create_incident():
    """Create a draft owned by the caller. Returns the incident (201)."""
    ctx = current_auth()
    incident = incident_service.create_incident(get_json_body(), ctx)
    return jsonify(incident_service.incident_detail(incident, ctx)), 201


@incident_bp.route("/export.xlsx", methods=["GET"])
@require_user
def export_incidents():
    """Workbook of visible incidents. Query params: status?"""
    buf = export_service.export_incidents_xlsx(current_auth(), request.args.get("status"))
    return Response(
        buf.getvalue(),
        mimetype=XLSX_MIMETYPE,
        headers={"Content-Disposition": f"attachment; filename={export_service.export_filename()}"},
    )


@incident_bp.route("/<incident_id>", methods=["GET"])
@require_auth
def get_incident(incident_id):
    """Incident with investigation, corrective actions, panels and available actions."""
    ctx = current_auth()
    incident = incident_service.get_visible_incident(incident_id, ctx)
    return jsonify(incident_service.incident_detail(incident, ctx)), 200


@incident_bp.route("/<incident_id>", methods=["PATCH"])
@require_user
def update_incident(incident_id):
    ctx = current_auth()
    incident = incident_service.update_incident(incident_id, get_json_body(), ctx)
    return jsonify(incident_service.incident_detail(incident, ctx)), 200


@incident_bp.route("/<incident_id>", methods=["DELETE"])
@require_user
def delete_incident(incident_id):
    incident_service.delete_incident(incident_id, current_auth())
    return jsonify({"deleted": True, "id": incident_id}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


@incident_bp.route("/<incident_id>/submit", methods=["POST"])
@require_user
def submit_incident(incident_id):
    return _run_transition(incident_id, "submit", get_json_body())


@incident_bp.route("/<incident_id>/qi-review", methods=["POST"])
@require_user
def qi_review(incident_id):
    """Body: { "decision": "approve" | "reject", "rejection_reason"?: str }"""
    data = get_json_body()
    action = QI_DECISIONS.get(data.get("decision"))
    if action is None:
        raise ValidationError("decision must be 'approve' or 'reject'",
                              details={"decision": "must be 'approve' or 'reject'"})
    return _run_transition(incident_id, action, data)


@incident_bp.route("/<incident_id>/begin-final-actions", methods=["POST"])
@require_user
def begin_final_actions(incident_id):
    return _run_transition(incident_id, "begin_final_actions", get_json_body())


@incident_bp.route("/<incident_id>/request-final-review", methods=["POST"])
@require_user
def request_final_review(incident_id):
    return _run_transition(incident_id, "request_final_review", get_json_body())


@incident_bp.route("/<incident_id>/close", methods=["POST"])
@require_user
def close_incident(incident_id):
    """Body: { "case_review": str (>=100), "reporter_feedback": str (>=50) }"""
    return _run_transition(incident_id, "close", get_json_body())


@incident_bp.route("/<incident_id>/force-status", methods=["POST"])
@require_user
def force_status(incident_id):
    """Admin override. Body: { "status": str, "reason": str }"""
    return _run_transition(incident_id, "force", get_json_body())


@incident_bp.route("/<incident_id>/actions", methods=["POST"])
@require_auth
def perform_action(incident_id):
    """
    Unified transition endpoint.

    Body: { "action": str, "data"?: {...}, "expected_version"?: int }
    ``submit_findings`` goes through the investigation submission so the
    findings are validated and locked with the status change.
    """
    body = get_json_body()
    action = body.get("action")
    if action not in VALID_ACTIONS:
        raise ValidationError(
            f"Unknown action: {action}",
            details={"action": f"must be one of: {', '.join(sorted(VALID_ACTIONS))}"},
        )
    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object", details={"data": "must be an object"})
    if "expected_version" in body:
        data = dict(data, expected_version=body["expected_version"])

    if action == "submit_findings":
        ctx = current_auth()
        incident = incident_service.get_visible_incident(incident_id, ctx)
        if incident.investigation is None:
            raise ValidationError("Incident has no investigation")
        result = investigation_service.submit_findings(
            incident.investigation.id, data, ctx, expected_version=expected_version(data)
        )
        incident = incident_service.get_visible_incident(incident_id, ctx)
        return jsonify({
            "transition": result["transition"],
            "incident": incident_service.incident_detail(incident, ctx),
        }), 200
    return _run_transition(incident_id, action, data)


# ═════════════════════════════════════════════════════════════════════════════
# Children
# ═════════════════════════════════════════════════════════════════════════════


@incident_bp.route("/<incident_id>/history", methods=["GET"])
@require_auth
def incident_history(incident_id):
    items = incident_service.incident_history(incident_id, current_auth())
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/<incident_id>/corrective-actions", methods=["GET"])
@require_auth
def list_corrective_actions(incident_id):
    items = corrective_action_service.list_for_incident(incident_id, current_auth())
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/<incident_id>/comments", methods=["GET"])
@require_auth
def list_comments(incident_id):
    """Newest first."""
    items = comment_service.list_comments(incident_id, current_auth())
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/<incident_id>/comments", methods=["POST"])
@require_user
def add_comment(incident_id):
    """Body: { "comment": str }"""
    comment = comment_service.add_comment(incident_id, get_json_body(), current_auth())
    return jsonify(comment.to_dict()), 201


@incident_bp.route("/<incident_id>/comments/<int:comment_id>", methods=["DELETE"])
@require_user
def delete_comment(incident_id, comment_id):
    comment_service.delete_comment(incident_id, comment_id, current_auth())
    return jsonify({"deleted": True, "id": comment_id}), 200
