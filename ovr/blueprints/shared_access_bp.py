"""
Shared Access Blueprint: invitations for external investigators and action handlers.

Endpoints:
  POST   /shared-access       - single invite; response carries ``access_url`` with the raw token
  PUT    /shared-access       - bulk invite { resource_type, resource_id, invitations: [{email, role?}] }
  DELETE /shared-access/<id>  - revoke
  GET    /shared-access       - list; query: resource_type, resource_id, incident_id
"""

from flask import Blueprint, jsonify, request

from ovr.auth import current_auth, require_user
from ovr.services import shared_access_service
from ovr.utils.helpers import get_json_body

shared_access_bp = Blueprint("shared_access", __name__, url_prefix="/api/v1/shared-access")


@shared_access_bp.route("", methods=["POST"])
@require_user
def invite():
    """
    Body: { "resource_type": "investigation" | "corrective_action",
            "resource_id": int, "email": str, "role"?: str, "token_expires_at"?: date }
    """
    result = shared_access_service.invite(get_json_body(), current_auth())
    return jsonify(result), 201


@shared_access_bp.route("", methods=["PUT"])
@require_user
def invite_bulk():
    items = shared_access_service.invite_bulk(get_json_body(), current_auth())
    return jsonify({"items": items, "total": len(items)}), 201


@shared_access_bp.route("/<int:access_id>", methods=["DELETE"])
@require_user
def revoke(access_id: int):
    return jsonify(shared_access_service.revoke(access_id, current_auth())), 200


@shared_access_bp.route("", methods=["GET"])
@require_user
def list_grants():
    items = shared_access_service.list_grants(
        current_auth(),
        resource_type=request.args.get("resource_type"),
        resource_id=request.args.get("resource_id"),
        incident_id=request.args.get("incident_id"),
    )
    return jsonify({"items": items, "total": len(items)}), 200
