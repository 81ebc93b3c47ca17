"""
Comment Service: discussion threads on incidents.

Anyone who can see an incident can read and add comments, at any status.
Only the author deletes a comment; admins may delete any.
"""

import logging

from ovr.access_control import can_perform
from ovr.auth import AuthContext
from ovr.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from ovr.models import db
from ovr.models.audit import write_audit
from ovr.models.incident import IncidentComment
from ovr.services.incident_service import get_visible_incident
from ovr.utils.helpers import commit_or_raise, require_text

logger = logging.getLogger(__name__)

COMMENT_MAX = 5000


def list_comments(incident_id: str, ctx: AuthContext) -> list[dict]:
    """Comments on a visible incident, newest first."""
    incident = get_visible_incident(incident_id, ctx)
    comments = (
        IncidentComment.query
        .filter_by(incident_id=incident.id)
        .order_by(IncidentComment.created_at.desc(), IncidentComment.id.desc())
        .all()
    )
    return [c.to_dict() for c in comments]


def add_comment(incident_id: str, data: dict, ctx: AuthContext) -> IncidentComment:
    incident = get_visible_incident(incident_id, ctx)
    if ctx.user_id is None or not can_perform(ctx.roles, "api", "comments", "create"):
        raise AuthorizationError("Only signed-in users can comment")

    errors: dict = {}
    text = require_text(data, "comment", errors, max_len=COMMENT_MAX)
    if errors:
        raise ValidationError("Invalid comment", details=errors)

    comment = IncidentComment(incident_id=incident.id, user_id=ctx.user_id, comment=text)
    db.session.add(comment)
    db.session.flush()
    write_audit(
        entity_type="comment",
        entity_id=comment.id,
        incident_id=incident.id,
        action="comment.create",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff={"comment": {"old": None, "new": text}},
    )
    commit_or_raise()
    logger.info("Comment %s added to %s", comment.id, incident.id,
                extra={"incident_id": incident.id, "user_id": ctx.user_id})
    return comment


def delete_comment(incident_id: str, comment_id: int, ctx: AuthContext) -> None:
    incident = get_visible_incident(incident_id, ctx)
    comment = db.session.get(IncidentComment, comment_id)
    if comment is None or comment.incident_id != incident.id:
        raise NotFoundError(resource="Comment", resource_id=comment_id)
    is_author = ctx.user_id is not None and comment.user_id == ctx.user_id
    if not is_author and not can_perform(ctx.roles, "api", "comments", "delete_any"):
        raise AuthorizationError("Only the author can delete a comment")

    write_audit(
        entity_type="comment",
        entity_id=comment.id,
        incident_id=incident.id,
        action="comment.delete",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff={"comment": {"old": comment.comment, "new": None}},
    )
    db.session.delete(comment)
    commit_or_raise()
