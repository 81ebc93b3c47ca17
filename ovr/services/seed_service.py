"""
Demo reference data for local development (``flask seed-demo``).

Idempotent: rows are looked up by their natural key before insert.
"""

import logging

from ovr.auth import ROLES
from ovr.models import db
from ovr.models.auth import Department, Location, User

logger = logging.getLogger(__name__)

DEMO_DEPARTMENTS = (
    "Emergency",
    "Intensive Care",
    "Pharmacy",
    "Radiology",
    "Quality Improvement",
)

DEMO_LOCATIONS = (
    # name, building, floor, department
    ("ER Triage", "Main", "G", "Emergency"),
    ("ER Resus Bay", "Main", "G", "Emergency"),
    ("ICU Ward A", "Main", "3", "Intensive Care"),
    ("Inpatient Pharmacy", "Annex", "1", "Pharmacy"),
    ("CT Suite", "Annex", "B1", "Radiology"),
)

DEMO_EMAIL_DOMAIN = "ovr.example"


def seed_demo() -> dict:
    """Insert departments, locations and one user per role. Returns counts of new rows."""
    created = {"departments": 0, "locations": 0, "users": 0}

    departments = {}
    for name in DEMO_DEPARTMENTS:
        dept = Department.query.filter_by(name=name).first()
        if dept is None:
            dept = Department(name=name)
            db.session.add(dept)
            created["departments"] += 1
        departments[name] = dept
    db.session.flush()

    for name, building, floor, dept_name in DEMO_LOCATIONS:
        if Location.query.filter_by(name=name).first() is None:
            db.session.add(Location(
                name=name, building=building, floor=floor,
                department_id=departments[dept_name].id,
            ))
            created["locations"] += 1

    for role in sorted(ROLES):
        email = f"{role.replace('_', '.')}@{DEMO_EMAIL_DOMAIN}"
        if User.query.filter_by(email=email).first() is not None:
            continue
        dept = departments["Quality Improvement"] if role.startswith("quality") else departments["Emergency"]
        user = User(
            email=email,
            display_name=role.replace("_", " ").title(),
            roles=[role],
            department_id=dept.id,
        )
        db.session.add(user)
        created["users"] += 1
    db.session.flush()

    head = User.query.filter_by(email=f"department.head@{DEMO_EMAIL_DOMAIN}").first()
    if head is not None and departments["Emergency"].head_id is None:
        departments["Emergency"].head_id = head.id

    db.session.commit()
    logger.info("Demo seed: %s", created)
    return created
