"""
OVR Tracker
Role catalogue and the per-request authentication context.

Every service call takes an explicit ``AuthContext``; blueprints obtain it
with ``current_auth()`` which reads the value the auth middleware placed on
``g`` once per request. Services never look at ``g`` themselves, so role
checks are testable with a hand-built context.

Contextual roles (``reporter``, ``investigator``) are not stored on the user.
They are derived per incident by ``effective_roles``.
"""

import functools
import logging
from dataclasses import dataclass, field

from flask import g

from ovr.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

SUPER_ADMIN = "super_admin"
TECH_ADMIN = "tech_admin"
DEVELOPER = "developer"
CEO = "ceo"
EXECUTIVE = "executive"
QUALITY_MANAGER = "quality_manager"
QUALITY_ANALYST = "quality_analyst"
DEPARTMENT_HEAD = "department_head"
ASSISTANT_DEPT_HEAD = "assistant_dept_head"
SUPERVISOR = "supervisor"
TEAM_LEAD = "team_lead"
FACILITY_MANAGER = "facility_manager"
EMPLOYEE = "employee"

ROLES = frozenset({
    SUPER_ADMIN, TECH_ADMIN, DEVELOPER, CEO, EXECUTIVE,
    QUALITY_MANAGER, QUALITY_ANALYST, DEPARTMENT_HEAD, ASSISTANT_DEPT_HEAD,
    SUPERVISOR, TEAM_LEAD, FACILITY_MANAGER, EMPLOYEE,
})

# Contextual roles, granted per incident
REPORTER = "reporter"
INVESTIGATOR = "investigator"

DEFAULT_ROLE = EMPLOYEE

# ── Role groups ──────────────────────────────────────────────────────────────

QI_STAFF = frozenset({SUPER_ADMIN, QUALITY_MANAGER, QUALITY_ANALYST, DEVELOPER})
QI_CLOSERS = frozenset({SUPER_ADMIN, QUALITY_MANAGER, DEVELOPER})
ADMINS = frozenset({SUPER_ADMIN, DEVELOPER})
SYSTEM_ADMINS = frozenset({SUPER_ADMIN, TECH_ADMIN, DEVELOPER})
EXECUTIVES = frozenset({CEO, EXECUTIVE})
DEPARTMENT_LEADS = frozenset({DEPARTMENT_HEAD, ASSISTANT_DEPT_HEAD})
TEAM_LEADS = frozenset({SUPERVISOR, TEAM_LEAD})


def has_any_role(roles, required) -> bool:
    """True if ``roles`` intersects ``required``."""
    return bool(set(roles or ()) & set(required))


def map_groups_to_roles(groups, group_role_map: dict) -> list[str]:
    """Translate identity-provider group ids into application roles.

    Unknown groups are ignored; a user with no mapped group is an employee.
    Roles outside the catalogue are dropped with a warning.
    """
    roles: list[str] = []
    for group in groups or ():
        for role in group_role_map.get(group, ()):
            if role not in ROLES:
                logger.warning("Group %s maps to unknown role '%s', ignored", group, role)
                continue
            if role not in roles:
                roles.append(role)
    return roles or [DEFAULT_ROLE]


# ── Auth context ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SharedGrant:
    """An accepted shared-access token presented with the request."""

    id: int
    incident_id: str
    resource_type: str
    resource_id: int
    role: str
    email: str = ""


@dataclass(frozen=True)
class AuthContext:
    """Who is acting. ``user_id`` is None for token-only external callers."""

    user_id: int | None = None
    email: str | None = None
    roles: frozenset = field(default_factory=frozenset)
    grants: tuple = ()

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None or bool(self.grants)

    def grants_for(self, incident_id: str, resource_type: str | None = None,
                   resource_id: int | None = None):
        return [
            gr for gr in self.grants
            if gr.incident_id == incident_id
            and (resource_type is None or gr.resource_type == resource_type)
            and (resource_id is None or gr.resource_id == resource_id)
        ]


ANONYMOUS = AuthContext()


def effective_roles(incident, ctx: AuthContext) -> frozenset:
    """Global roles plus the contextual roles the caller holds on ``incident``."""
    roles = set(ctx.roles)
    if ctx.user_id is not None and incident.reporter_id == ctx.user_id:
        roles.add(REPORTER)
    investigation = incident.investigation
    if investigation is not None:
        if ctx.user_id is not None and any(
            u.id == ctx.user_id for u in investigation.investigators
        ):
            roles.add(INVESTIGATOR)
        if any(gr.role == INVESTIGATOR for gr in
               ctx.grants_for(incident.id, "investigation", investigation.id)):
            roles.add(INVESTIGATOR)
    return frozenset(roles)


def current_auth() -> AuthContext:
    """Return the request's AuthContext (ANONYMOUS outside a request)."""
    return getattr(g, "auth", None) or ANONYMOUS


def require_auth(f):
    """Decorator: reject requests with neither a user nor a shared-access grant."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not current_auth().is_authenticated:
            raise AuthenticationError()
        return f(*args, **kwargs)

    return decorated


def require_user(f):
    """Decorator: reject requests without a signed-in user (tokens alone are not enough)."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_auth().user_id is None:
            raise AuthenticationError()
        return f(*args, **kwargs)

    return decorated
