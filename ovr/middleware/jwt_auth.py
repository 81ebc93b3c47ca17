"""
Auth Middleware: builds ``g.auth`` (an AuthContext) once per request.

Sources, combined:
  1. Authorization: Bearer <access token>  →  user_id, email, roles
  2. ?token=<share token> or X-Share-Token  →  shared-access grants

A bad or expired bearer token is a 401 straight away. A bad share token is
a 401 only when there is no signed-in user to fall back on. Requests with
neither stay anonymous; ``require_auth`` on the view rejects them.
"""

import logging

import jwt as pyjwt
from flask import g, request

from ovr.auth import ANONYMOUS, AuthContext
from ovr.core.exceptions import AuthenticationError
from ovr.models import db
from ovr.models.auth import User
from ovr.services.jwt_service import decode_access_token
from ovr.services.shared_access_service import resolve_token

logger = logging.getLogger(__name__)

# Paths that skip auth parsing entirely
AUTH_SKIP_PREFIXES = (
    "/api/v1/auth/token",
    "/api/v1/health",
    "/api/v1/statuses",
)


def _user_from_bearer(token: str):
    try:
        payload = decode_access_token(token)
    except pyjwt.ExpiredSignatureError:
        raise AuthenticationError("Access token expired") from None
    except pyjwt.InvalidTokenError:
        raise AuthenticationError("Invalid access token") from None

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid access token") from None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("Account is not active")
    return user_id, payload.get("email") or user.email, frozenset(payload.get("roles") or ())


def init_auth_middleware(app):
    """Register auth parsing as a before_request hook."""

    @app.before_request
    def _authenticate():
        g.auth = ANONYMOUS

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in AUTH_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        user_id, email, roles = None, None, frozenset()
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            user_id, email, roles = _user_from_bearer(auth_header[7:])

        grants = ()
        share_token = request.args.get("token") or request.headers.get("X-Share-Token")
        if share_token:
            grant = resolve_token(share_token)
            if grant is not None:
                grants = (grant,)
                email = email or grant.email
            elif user_id is None:
                logger.warning("Rejected share token on %s", path)
                raise AuthenticationError("Invalid, expired or revoked access token")

        g.auth = AuthContext(user_id=user_id, email=email, roles=roles, grants=grants)
