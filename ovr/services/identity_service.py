"""
Identity Service: exchange identity-provider tokens for application tokens.

The identity provider is opaque: it hands the client an HS256 ID token with
``email``, ``name`` and ``groups``. This service verifies it, provisions or
refreshes the local User, maps groups to roles and issues an access token.
"""

import logging
from datetime import datetime, timezone

import jwt
from email_validator import EmailNotValidError, validate_email
from flask import current_app

from ovr.auth import map_groups_to_roles
from ovr.core.exceptions import AuthenticationError
from ovr.models import db
from ovr.models.auth import User
from ovr.services.jwt_service import _get_access_expires, decode_identity_token, generate_access_token
from ovr.utils.helpers import commit_or_raise

logger = logging.getLogger(__name__)


def normalise_email(raw) -> str:
    """Validated, lower-cased address. Raises EmailNotValidError."""
    result = validate_email(str(raw or ""), check_deliverability=False)
    return result.normalized.lower()


def exchange_identity_token(id_token: str) -> dict:
    """
    Verify ``id_token`` and return an application token pair for its user.

    Returns:
        {"access_token", "token_type", "expires_in", "user"}

    Raises:
        AuthenticationError: bad signature, audience, expiry or email,
        or a deactivated account.
    """
    try:
        claims = decode_identity_token(id_token)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Identity token expired") from None
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected identity token: %s", exc)
        raise AuthenticationError("Invalid identity token") from None

    try:
        email = normalise_email(claims.get("email"))
    except EmailNotValidError:
        raise AuthenticationError("Identity token carries no valid email") from None

    groups = claims.get("groups") or []
    if not isinstance(groups, list):
        groups = [groups]
    roles = map_groups_to_roles(groups, current_app.config.get("IDP_GROUP_ROLE_MAP") or {})

    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email)
        db.session.add(user)
        logger.info("Provisioned user %s on first sign-in", email)
    elif not user.is_active:
        raise AuthenticationError("Account is deactivated")

    user.display_name = claims.get("name") or user.display_name or email.split("@")[0]
    user.roles = roles
    user.last_login_at = datetime.now(timezone.utc)
    commit_or_raise()

    return {
        "access_token": generate_access_token(user.id, user.email, roles),
        "token_type": "Bearer",
        "expires_in": _get_access_expires(),
        "user": user.to_dict(),
    }
