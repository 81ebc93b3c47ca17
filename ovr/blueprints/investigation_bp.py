"""
Investigation Blueprint.

Endpoints:
  GET   /investigations/<id>                - findings + edit hints
  PATCH /investigations/<id>                - save draft findings
  POST  /investigations/<id>/investigators  - { "user_ids": [int] }
  POST  /investigations/<id>/submit         - final submission, moves the incident on

Shared-access investigators pass ``?token=<share token>``.
"""

from flask import Blueprint, jsonify

from ovr.auth import current_auth, require_auth, require_user
from ovr.services import investigation_service
from ovr.utils.helpers import expected_version, get_json_body

investigation_bp = Blueprint("investigations", __name__, url_prefix="/api/v1/investigations")


@investigation_bp.route("/<int:investigation_id>", methods=["GET"])
@require_auth
def get_investigation(investigation_id: int):
    ctx = current_auth()
    investigation = investigation_service.get_investigation(investigation_id, ctx)
    return jsonify(investigation_service.investigation_detail(investigation, ctx)), 200


@investigation_bp.route("/<int:investigation_id>", methods=["PATCH"])
@require_auth
def update_investigation(investigation_id: int):
    """Body: any of findings, problems_identified, cause_classification,
    cause_details, prevention_recommendation."""
    ctx = current_auth()
    investigation = investigation_service.update_draft(investigation_id, get_json_body(), ctx)
    return jsonify(investigation_service.investigation_detail(investigation, ctx)), 200


@investigation_bp.route("/<int:investigation_id>/investigators", methods=["POST"])
@require_user
def assign_investigators(investigation_id: int):
    ctx = current_auth()
    data = get_json_body()
    investigation = investigation_service.assign_investigators(
        investigation_id, data.get("user_ids"), ctx
    )
    return jsonify(investigation_service.investigation_detail(investigation, ctx)), 200


@investigation_bp.route("/<int:investigation_id>/submit", methods=["POST"])
@require_auth
def submit_investigation(investigation_id: int):
    """
    Body: findings (>=100), problems_identified (>=50), cause_classification,
          cause_details (>=50), prevention_recommendation?, expected_version?
    Fields left out fall back to the saved draft.
    """
    data = get_json_body()
    result = investigation_service.submit_findings(
        investigation_id, data, current_auth(), expected_version=expected_version(data)
    )
    return jsonify(result), 200
