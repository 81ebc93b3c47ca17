"""
JWT Service: access-token issue and verification, identity-token checks.

Access token:  1 hour (configurable via JWT_ACCESS_EXPIRES)
Algorithm:     HS256

Token payload (access):
{
    "sub": "<user_id>",
    "email": "<email>",
    "roles": ["quality_manager", ...],
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

DEFAULT_ACCESS_EXPIRES = 3600
ALGORITHM = "HS256"


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


# ═══════════════════════════════════════════════════════════════
# Access tokens
# ═══════════════════════════════════════════════════════════════
def generate_access_token(user_id: int, email: str, roles: list[str]) -> str:
    """Generate a short-lived access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "roles": list(roles),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=_get_access_expires()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    return payload


def decode_identity_token(token: str) -> dict:
    """
    Verify an identity-provider ID token (HS256, shared secret, audience).

    Raises jwt.exceptions on failure.
    """
    secret = current_app.config.get("IDP_SHARED_SECRET")
    if not secret:
        raise jwt.InvalidTokenError("Identity provider is not configured")
    return jwt.decode(
        token,
        secret,
        algorithms=[ALGORITHM],
        audience=current_app.config.get("IDP_AUDIENCE"),
        options={"require": ["exp", "email"]},
    )


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════
def hash_token(token: str) -> str:
    """SHA-256 hash of a token stored in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_share_token() -> str:
    """Secure random share token (64 hex chars)."""
    return secrets.token_hex(32)

