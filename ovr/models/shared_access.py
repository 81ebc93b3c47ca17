"""
SharedAccess: token invitations for external investigators and action handlers.

Only the SHA-256 hash of the token is stored; the raw token leaves the
server once, inside the ``access_url`` returned to the inviter.
"""

from datetime import datetime, timezone

from ovr.models import db

RESOURCE_TYPES = frozenset({"investigation", "corrective_action"})
SHARED_ROLES = frozenset({"investigator", "action_handler", "viewer"})


class SharedAccess(db.Model):
    __tablename__ = "shared_access"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.String(20), db.ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    resource_type = db.Column(db.String(30), nullable=False)
    resource_id = db.Column(db.Integer, nullable=False)
    email = db.Column(db.String(255), nullable=False)
    # Set when the invitee also has an account
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    role = db.Column(db.String(20), nullable=False, default="viewer")
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    token_expires_at = db.Column(db.DateTime(timezone=True))
    status = db.Column(db.String(10), nullable=False, default="pending")
    invited_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    invited_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    accepted_at = db.Column(db.DateTime(timezone=True))
    last_accessed_at = db.Column(db.DateTime(timezone=True))
    revoked_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    revoked_at = db.Column(db.DateTime(timezone=True))

    __table_args__ = (
        db.CheckConstraint(
            "resource_type IN ('investigation','corrective_action')",
            name="ck_shared_access_resource_type",
        ),
        db.CheckConstraint(
            "role IN ('investigator','action_handler','viewer')", name="ck_shared_access_role"
        ),
        db.CheckConstraint(
            "status IN ('pending','accepted','revoked')", name="ck_shared_access_status"
        ),
        db.Index("ix_shared_access_resource", "resource_type", "resource_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "email": self.email,
            "user_id": self.user_id,
            "role": self.role,
            "status": self.status,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "invited_by_id": self.invited_by_id,
            "invited_at": self.invited_at.isoformat() if self.invited_at else None,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "last_accessed_at": self.last_accessed_at.isoformat() if self.last_accessed_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }

    def __repr__(self):
        return f"<SharedAccess {self.id}: {self.email} → {self.resource_type}/{self.resource_id} [{self.status}]>"
