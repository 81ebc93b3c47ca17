"""
OVR Tracker
Centralised access control table.

Single source of truth for every permission check. Blueprints and services
consult it before mutating state; ``GET /api/v1/auth/permissions`` serialises
the roles-only predicates for the client so the UI never keeps its own copy.

    ACCESS_CONTROL["api"]["locations"]["create"](roles)
    can_perform(roles, "api", "incidents", "delete", is_owner, is_draft)

Each predicate takes the caller's role set first; a few take extra context
(ownership, draft state, assignment) as positional arguments.
"""

import inspect

from ovr.auth import (
    ASSISTANT_DEPT_HEAD,
    DEPARTMENT_HEAD,
    DEPARTMENT_LEADS,
    DEVELOPER,
    EMPLOYEE,
    EXECUTIVES,
    FACILITY_MANAGER,
    QI_CLOSERS,
    QI_STAFF,
    QUALITY_ANALYST,
    QUALITY_MANAGER,
    SUPER_ADMIN,
    SUPERVISOR,
    SYSTEM_ADMINS,
    TEAM_LEAD,
    TEAM_LEADS,
    TECH_ADMIN,
    has_any_role,
)


def _any_of(*groups):
    """Predicate: the caller holds at least one role from ``groups``."""
    required = frozenset().union(*(frozenset(g) if not isinstance(g, str) else {g} for g in groups))

    def predicate(roles):
        return has_any_role(roles, required)

    predicate.required = required
    return predicate


def _everyone(roles):
    return True


def _can_delete_incident(roles, is_owner, is_draft):
    return (is_draft and is_owner) or has_any_role(
        roles, {SUPER_ADMIN, QUALITY_MANAGER, DEVELOPER}
    )


def _can_edit_incident(roles, is_owner, is_draft):
    return is_draft and is_owner


def _can_edit_investigation(roles, is_investigator):
    return is_investigator or has_any_role(roles, QI_STAFF)


def _can_submit_investigation(roles, is_investigator):
    return is_investigator or has_any_role(roles, QI_STAFF)


def _can_update_corrective_action(roles, is_assignee, is_handler):
    return is_assignee or is_handler or has_any_role(roles, QI_STAFF)


def _can_edit_investigation_section(roles, is_investigator):
    return is_investigator or has_any_role(roles, {SUPER_ADMIN, ASSISTANT_DEPT_HEAD, DEVELOPER})


ACCESS_CONTROL = {
    "api": {
        "users": {
            "view": _any_of(SYSTEM_ADMINS),
            "manage": _any_of(SYSTEM_ADMINS),
            "filter_by_role": _any_of(SYSTEM_ADMINS),
        },
        "locations": {
            "view": _everyone,
            "create": _any_of(SYSTEM_ADMINS, FACILITY_MANAGER),
            "edit": _any_of(SYSTEM_ADMINS, FACILITY_MANAGER),
            "delete": _any_of(SYSTEM_ADMINS),
        },
        "departments": {
            "view": _everyone,
            "create": _any_of(SYSTEM_ADMINS),
            "edit": _any_of(SYSTEM_ADMINS),
            "delete": _any_of(SYSTEM_ADMINS),
        },
        "incidents": {
            "view_all": _any_of(QI_STAFF, EXECUTIVES),
            "view_department": _any_of(DEPARTMENT_LEADS),
            "view_team": _any_of(TEAM_LEADS),
            "create": _everyone,
            "edit": _can_edit_incident,
            "delete": _can_delete_incident,
            "export": _any_of(QI_STAFF, EXECUTIVES),
            "force_status": _any_of({SUPER_ADMIN, DEVELOPER}),
        },
        "qi_review": {
            "approve": _any_of(QI_STAFF),
            "reject": _any_of(QI_STAFF),
            "provide_feedback": _any_of(QI_STAFF),
        },
        "investigations": {
            "view": _any_of(QI_STAFF, EXECUTIVES, DEPARTMENT_LEADS),
            "assign_investigators": _any_of({SUPER_ADMIN, QUALITY_MANAGER, DEPARTMENT_HEAD, DEVELOPER}),
            "edit": _can_edit_investigation,
            "submit": _can_submit_investigation,
        },
        "corrective_actions": {
            "view": _any_of(QI_STAFF, EXECUTIVES, DEPARTMENT_LEADS),
            "create": _any_of(QI_STAFF),
            "update": _can_update_corrective_action,
            "close": _any_of(QI_STAFF),
        },
        "shared_access": {
            "invite": _any_of(QI_STAFF),
            "revoke": _any_of(QI_STAFF),
            "view": _any_of(QI_STAFF),
        },
        "comments": {
            "create": _everyone,
            "delete_any": _any_of({SUPER_ADMIN, DEVELOPER}),
        },
        "close_incident": {
            "begin_final_actions": _any_of(QI_STAFF),
            "request_final_review": _any_of(QI_STAFF),
            "close": _any_of(QI_CLOSERS),
        },
        "stats": {
            "view_system": _any_of(SYSTEM_ADMINS),
            "view_executive": _any_of(EXECUTIVES),
            "view_qi": _any_of({QUALITY_MANAGER, QUALITY_ANALYST}),
            "view_department": _any_of(DEPARTMENT_LEADS),
            "view_team": _any_of(TEAM_LEADS),
        },
    },
    "ui": {
        "navigation": {
            "show_administration": _any_of(SYSTEM_ADMINS),
            "show_user_management": _any_of(SYSTEM_ADMINS),
            "show_system_settings": _any_of({SUPER_ADMIN, TECH_ADMIN}),
            "show_location_management": _any_of({SUPER_ADMIN, TECH_ADMIN, FACILITY_MANAGER}),
            "show_qi_review": _any_of(QI_STAFF),
            "show_hod_review": _any_of({SUPER_ADMIN, DEVELOPER}, DEPARTMENT_LEADS),
            "show_pending_approval": _any_of({SUPERVISOR, TEAM_LEAD, DEPARTMENT_HEAD, EMPLOYEE}),
        },
        "incident_form": {
            "edit_supervisor_section": _any_of({SUPER_ADMIN, SUPERVISOR, TEAM_LEAD, DEPARTMENT_HEAD, DEVELOPER}),
            "edit_qi_section": _any_of(QI_STAFF),
            "edit_investigation_section": _can_edit_investigation_section,
            "assign_hod": _any_of(QI_STAFF),
        },
        "user_management": {
            "access": _any_of(SYSTEM_ADMINS),
            "edit_roles": _any_of(SYSTEM_ADMINS),
            "deactivate_users": _any_of({SUPER_ADMIN, TECH_ADMIN}),
        },
    },
}


def can_perform(roles, category: str, resource: str, action: str, *context) -> bool:
    """Look up and evaluate a predicate.

    Unknown entries deny. An empty role set denies every roles-only predicate;
    contextual ones still get to look at their context (external token holders
    carry no roles).
    """
    predicate = ACCESS_CONTROL.get(category, {}).get(resource, {}).get(action)
    if predicate is None:
        return False
    if not roles and is_roles_only(predicate):
        return False
    return bool(predicate(roles, *context))


def is_roles_only(predicate) -> bool:
    """True when the predicate needs nothing beyond the role set."""
    return len(inspect.signature(predicate).parameters) == 1


def permissions_matrix(roles) -> dict:
    """Evaluate every roles-only predicate for ``roles``.

    Context-dependent predicates are omitted; the client gets those answers
    per record (``available_actions`` and ``panels`` on the incident).
    """
    matrix: dict = {}
    for category, resources in ACCESS_CONTROL.items():
        for resource, actions in resources.items():
            for action, predicate in actions.items():
                if not is_roles_only(predicate):
                    continue
                matrix.setdefault(category, {}).setdefault(resource, {})[action] = (
                    bool(roles) and bool(predicate(roles))
                )
    return matrix
