"""
Shared pytest fixtures for the OVR Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - session: Per-test fresh schema inside an app context (autouse)
    - client: Flask test client
    - make_user / auth_headers: user factory and Bearer header helper
    - make_incident: ORM factory that places an incident at any status
    - ctx_for: AuthContext for a user, for service-level tests
"""

from datetime import date

import pytest

from ovr import create_app
from ovr.auth import AuthContext
from ovr.models import db as _db
from ovr.models.auth import Department, Location, User
from ovr.models.incident import CorrectiveAction, Incident, Investigation
from ovr.services.jwt_service import generate_access_token

DESCRIPTION = "Patient slipped on a wet floor near the triage desk."


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context with a fresh schema."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.remove()
        _db.drop_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def department():
    dept = Department(name="Emergency")
    _db.session.add(dept)
    _db.session.commit()
    return dept


@pytest.fixture()
def location(department):
    loc = Location(name="ER Triage", building="Main", floor="G", department_id=department.id)
    _db.session.add(loc)
    _db.session.commit()
    return loc


@pytest.fixture()
def make_user():
    """Create and commit a user. ``make_user("qm@h.org", ["quality_manager"])``."""
    counter = {"n": 0}

    def _make(email=None, roles=None, department_id=None, is_active=True):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@hospital.org",
            display_name=f"User {counter['n']}",
            roles=list(roles or ["employee"]),
            department_id=department_id,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def auth_headers():
    """Bearer header for a user, minted with the app's secret."""

    def _headers(user):
        token = generate_access_token(user.id, user.email, user.roles)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def ctx_for():
    """AuthContext for a user (optionally with shared-access grants)."""

    def _ctx(user=None, grants=()):
        if user is None:
            email = grants[0].email if grants else None
            return AuthContext(email=email or None, grants=tuple(grants))
        return AuthContext(
            user_id=user.id, email=user.email, roles=frozenset(user.roles), grants=tuple(grants)
        )

    return _ctx


@pytest.fixture()
def make_incident():
    """Create an incident directly at ``status`` (bypasses the lifecycle)."""
    counter = {"n": 0}

    def _make(reporter, status="draft", with_investigation=False, **fields):
        counter["n"] += 1
        incident = Incident(
            id=fields.pop("id", f"OVR-2020-{counter['n']:03d}"),
            status=status,
            reporter_id=reporter.id,
            occurrence_date=fields.pop("occurrence_date", date(2020, 1, 15)),
            occurrence_category=fields.pop("occurrence_category", "fall"),
            description=fields.pop("description", DESCRIPTION),
            **fields,
        )
        if with_investigation:
            incident.investigation = Investigation()
        _db.session.add(incident)
        _db.session.commit()
        return incident

    return _make


@pytest.fixture()
def make_action():
    """Create a corrective action directly on an incident."""

    def _make(incident, status="open", assignees=(), title="Replace floor signage"):
        action = CorrectiveAction(
            incident=incident,
            title=title,
            description="Install permanent wet-floor signage at every entrance.",
            due_date=date(2030, 1, 1),
            checklist=[{"id": "item1", "text": "Order signs", "completed": False,
                        "completed_at": None, "completed_by": None}],
            status=status,
        )
        action.assignees = list(assignees)
        _db.session.add(action)
        _db.session.commit()
        return action

    return _make
