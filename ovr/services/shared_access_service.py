"""
Shared Access Service: email invitations with revocable bearer tokens.

QI staff invite an external (or internal) collaborator to one investigation
or corrective action. The raw token is returned once inside ``access_url``;
only its SHA-256 hash is stored. The first presentation of a pending token
flips it to ``accepted``. Revoked and expired tokens grant nothing.
"""

import logging
from datetime import datetime, timedelta, timezone

from email_validator import EmailNotValidError
from flask import current_app

from ovr.access_control import can_perform
from ovr.auth import AuthContext, SharedGrant
from ovr.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ovr.models import db
from ovr.models.audit import write_audit
from ovr.models.auth import User
from ovr.models.incident import CorrectiveAction, Investigation
from ovr.models.shared_access import RESOURCE_TYPES, SHARED_ROLES, SharedAccess
from ovr.services.identity_service import normalise_email
from ovr.services.jwt_service import generate_share_token, hash_token
from ovr.utils.helpers import atomic, commit_or_raise, parse_date
from ovr.workflow.status import is_closed_status

logger = logging.getLogger(__name__)

DEFAULT_ROLE_FOR = {
    "investigation": "investigator",
    "corrective_action": "action_handler",
}
MAX_BULK_INVITES = 50

_RESOURCE_MODELS = {
    "investigation": Investigation,
    "corrective_action": CorrectiveAction,
}


def _as_aware(value):
    """SQLite hands back naive datetimes; stored values are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require(ctx: AuthContext, action: str):
    if not can_perform(ctx.roles, "api", "shared_access", action):
        raise AuthorizationError("Only QI staff can manage shared access")


def _load_resource(resource_type, resource_id):
    errors = {}
    if resource_type not in RESOURCE_TYPES:
        errors["resource_type"] = f"resource_type must be one of: {', '.join(sorted(RESOURCE_TYPES))}"
    try:
        resource_id = int(resource_id)
    except (TypeError, ValueError):
        errors["resource_id"] = "resource_id must be an integer"
    if errors:
        raise ValidationError("Invalid shared access target", details=errors)
    resource = db.session.get(_RESOURCE_MODELS[resource_type], resource_id)
    if resource is None:
        raise NotFoundError(resource=resource_type.replace("_", " ").title(), resource_id=resource_id)
    return resource


def _expiry(raw_expires_at):
    if raw_expires_at:
        day = parse_date(raw_expires_at)
        if day is None:
            raise ValidationError("Invalid expiry", details={"token_expires_at": "must be a date"})
        expires = datetime.combine(day, datetime.max.time(), tzinfo=timezone.utc)
        if expires <= datetime.now(timezone.utc):
            raise ValidationError("Invalid expiry", details={"token_expires_at": "must be in the future"})
        return expires
    days = current_app.config.get("SHARED_ACCESS_TOKEN_DAYS", 30)
    return datetime.now(timezone.utc) + timedelta(days=days)


def access_url(resource_type: str, resource_id: int, token: str) -> str:
    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    return f"{base}/{resource_type}s/{resource_id}?token={token}"


def _create_grant(resource, resource_type, email_raw, role, expires_at, ctx) -> dict:
    try:
        email = normalise_email(email_raw)
    except EmailNotValidError as exc:
        raise ValidationError("Invalid email", details={"email": str(exc)}) from None
    role = role or DEFAULT_ROLE_FOR[resource_type]
    if role not in SHARED_ROLES:
        raise ValidationError(
            "Invalid role", details={"role": f"must be one of: {', '.join(sorted(SHARED_ROLES))}"}
        )
    if resource_type == "corrective_action" and role == "investigator":
        raise ValidationError("Invalid role", details={"role": "investigator applies to investigations only"})

    token = generate_share_token()
    existing_user = User.query.filter_by(email=email).first()
    grant = SharedAccess(
        incident_id=resource.incident_id,
        resource_type=resource_type,
        resource_id=resource.id,
        email=email,
        user_id=existing_user.id if existing_user else None,
        role=role,
        token_hash=hash_token(token),
        token_expires_at=expires_at,
        status="pending",
        invited_by_id=ctx.user_id,
    )
    db.session.add(grant)
    db.session.flush()
    write_audit(
        entity_type="shared_access",
        entity_id=grant.id,
        incident_id=grant.incident_id,
        action="shared_access.invite",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff={"email": {"old": None, "new": email}, "role": {"old": None, "new": role}},
    )
    result = grant.to_dict()
    result["access_url"] = access_url(resource_type, resource.id, token)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Invitations
# ═════════════════════════════════════════════════════════════════════════════


def invite(data: dict, ctx: AuthContext) -> dict:
    """Single invitation. Returns the grant plus ``access_url`` with the raw token."""
    _require(ctx, "invite")
    resource_type = data.get("resource_type")
    resource = _load_resource(resource_type, data.get("resource_id"))
    if is_closed_status(resource.incident.status):
        raise ConflictError("Incident is closed", current_status=resource.incident.status)
    result = _create_grant(
        resource, resource_type, data.get("email"), data.get("role"),
        _expiry(data.get("token_expires_at")), ctx,
    )
    commit_or_raise()
    logger.info("Shared access %s granted on %s/%s", result["id"], resource_type, resource.id,
                extra={"incident_id": resource.incident_id, "user_id": ctx.user_id})
    return result


def invite_bulk(data: dict, ctx: AuthContext) -> list[dict]:
    """Many invitations to one resource, all or nothing."""
    _require(ctx, "invite")
    resource_type = data.get("resource_type")
    resource = _load_resource(resource_type, data.get("resource_id"))
    if is_closed_status(resource.incident.status):
        raise ConflictError("Incident is closed", current_status=resource.incident.status)
    invitations = data.get("invitations")
    if not isinstance(invitations, list) or not invitations:
        raise ValidationError("invitations must be a non-empty list",
                              details={"invitations": "required"})
    if len(invitations) > MAX_BULK_INVITES:
        raise ValidationError(f"At most {MAX_BULK_INVITES} invitations per request",
                              details={"invitations": "too many"})
    expires_at = _expiry(data.get("token_expires_at"))
    results = []
    with atomic():
        for entry in invitations:
            if not isinstance(entry, dict):
                raise ValidationError("Each invitation must be an object",
                                      details={"invitations": "invalid entry"})
            results.append(_create_grant(
                resource, resource_type, entry.get("email"), entry.get("role"), expires_at, ctx,
            ))
    commit_or_raise()
    return results


def revoke(access_id: int, ctx: AuthContext) -> dict:
    _require(ctx, "revoke")
    grant = db.session.get(SharedAccess, access_id)
    if grant is None:
        raise NotFoundError(resource="Shared access", resource_id=access_id)
    if grant.status == "revoked":
        return grant.to_dict()
    previous = grant.status
    grant.status = "revoked"
    grant.revoked_by_id = ctx.user_id
    grant.revoked_at = datetime.now(timezone.utc)
    write_audit(
        entity_type="shared_access",
        entity_id=grant.id,
        incident_id=grant.incident_id,
        action="shared_access.revoke",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff={"status": {"old": previous, "new": "revoked"}},
    )
    commit_or_raise()
    return grant.to_dict()


def list_grants(ctx: AuthContext, resource_type=None, resource_id=None, incident_id=None) -> list[dict]:
    _require(ctx, "view")
    query = SharedAccess.query
    if resource_type:
        query = query.filter(SharedAccess.resource_type == resource_type)
    if resource_id:
        try:
            query = query.filter(SharedAccess.resource_id == int(resource_id))
        except (TypeError, ValueError):
            raise ValidationError("resource_id must be an integer") from None
    if incident_id:
        query = query.filter(SharedAccess.incident_id == incident_id)
    return [g.to_dict() for g in query.order_by(SharedAccess.invited_at.desc(), SharedAccess.id.desc()).all()]


# ═════════════════════════════════════════════════════════════════════════════
# Token presentation
# ═════════════════════════════════════════════════════════════════════════════


def resolve_token(raw_token: str) -> SharedGrant | None:
    """
    Look up a presented token. Returns None for unknown, revoked or expired
    tokens. A pending grant is accepted on first use.
    """
    if not raw_token:
        return None
    grant = SharedAccess.query.filter_by(token_hash=hash_token(raw_token)).first()
    if grant is None or grant.status == "revoked":
        return None
    now = datetime.now(timezone.utc)
    expires_at = _as_aware(grant.token_expires_at)
    if expires_at is not None and expires_at <= now:
        logger.info("Expired share token presented for grant %s", grant.id)
        return None
    if grant.status == "pending":
        grant.status = "accepted"
        grant.accepted_at = now
        write_audit(
            entity_type="shared_access",
            entity_id=grant.id,
            incident_id=grant.incident_id,
            action="shared_access.accept",
            actor=grant.email,
            diff={"status": {"old": "pending", "new": "accepted"}},
        )
    grant.last_accessed_at = now
    commit_or_raise()
    return SharedGrant(
        id=grant.id,
        incident_id=grant.incident_id,
        resource_type=grant.resource_type,
        resource_id=grant.resource_id,
        role=grant.role,
        email=grant.email,
    )
