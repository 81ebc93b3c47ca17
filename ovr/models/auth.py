"""
Reference models: users, departments, locations.

Users are provisioned on first sign-in through the identity-provider token
exchange; roles are refreshed from group membership on every sign-in.
"""

from datetime import datetime, timezone

from ovr.models import db


# ═══════════════════════════════════════════════════════════════
# 1. DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), unique=True, nullable=False)
    head_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_departments_head"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    head = db.relationship("User", foreign_keys=[head_id])

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "head_id": self.head_id,
        }

    def __repr__(self):
        return f"<Department {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 2. LOCATIONS
# ═══════════════════════════════════════════════════════════════
class Location(db.Model):
    __tablename__ = "locations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    building = db.Column(db.String(100))
    floor = db.Column(db.String(50))
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    department = db.relationship("Department")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "building": self.building,
            "floor": self.floor,
            "department_id": self.department_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Location {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 3. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(200))
    roles = db.Column(db.JSON, nullable=False, default=list)
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    department = db.relationship("Department", foreign_keys=[department_id])

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "roles": list(self.roles or []),
            "department_id": self.department_id,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }

    def to_brief(self):
        return {"id": self.id, "email": self.email, "display_name": self.display_name}

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
