"""
Auth Blueprint: identity-provider token exchange and caller introspection.

Endpoints:
  POST /api/v1/auth/token        - IdP ID token → application access token
  GET  /api/v1/auth/me           - Current user (or shared-access grants)
  GET  /api/v1/auth/permissions  - Roles-only access-control matrix for the caller
"""

from flask import Blueprint, jsonify

from ovr.access_control import permissions_matrix
from ovr.auth import current_auth, require_auth
from ovr.core.exceptions import ValidationError
from ovr.models import db
from ovr.models.auth import User
from ovr.services.identity_service import exchange_identity_token
from ovr.utils.helpers import get_json_body

auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/token
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/token", methods=["POST"])
def exchange_token():
    """
    Exchange an identity-provider ID token.

    Body: { "id_token": "..." }
    """
    data = get_json_body()
    id_token = data.get("id_token")
    if not id_token or not isinstance(id_token, str):
        raise ValidationError("id_token is required", details={"id_token": "required"})
    return jsonify(exchange_identity_token(id_token)), 200


# ═══════════════════════════════════════════════════════════════
# GET /api/v1/auth/me
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    ctx = current_auth()
    user = db.session.get(User, ctx.user_id) if ctx.user_id is not None else None
    return jsonify({
        "user": user.to_dict() if user else None,
        "email": ctx.email,
        "roles": sorted(ctx.roles),
        "grants": [
            {
                "id": gr.id,
                "incident_id": gr.incident_id,
                "resource_type": gr.resource_type,
                "resource_id": gr.resource_id,
                "role": gr.role,
            }
            for gr in ctx.grants
        ],
    }), 200


# ═══════════════════════════════════════════════════════════════
# GET /api/v1/auth/permissions
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/permissions", methods=["GET"])
@require_auth
def permissions():
    """Every roles-only predicate evaluated for the caller's roles."""
    ctx = current_auth()
    return jsonify({"roles": sorted(ctx.roles), "permissions": permissions_matrix(ctx.roles)}), 200
