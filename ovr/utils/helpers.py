"""Shared helpers for blueprints and services.

get_json_body:       request body as a dict or ValidationError
parse_date:          ISO / DD.MM.YYYY to date, None on bad input
require_text:        length-bounded string fields with field-level errors
commit_or_raise:     commit that maps DB failures onto the exception hierarchy
atomic:              unit of work that rolls back on failure
expected_version:    optional optimistic-concurrency token from a body
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime

from flask import request
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ovr.core.exceptions import ConflictError, OVRError, ValidationError
from ovr.models import db

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Record was modified by another request; reload and retry"


def get_json_body() -> dict:
    """Return the JSON body as a dict; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def require_text(data: dict, field: str, errors: dict, *, min_len: int = 1,
                 max_len: int | None = None, required: bool = True):
    """Read a stripped string field, recording a message in ``errors`` on failure.

    Returns the cleaned value, or None when missing/invalid.
    """
    raw = data.get(field)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            errors[field] = f"{field} is required"
        return None
    if not isinstance(raw, str):
        errors[field] = f"{field} must be a string"
        return None
    value = raw.strip()
    if len(value) < min_len:
        errors[field] = f"{field} must be at least {min_len} characters"
        return None
    if max_len is not None and len(value) > max_len:
        errors[field] = f"{field} must be at most {max_len} characters"
        return None
    return value


def commit_or_raise():
    """Commit the current session, translating failures.

    IntegrityError   → ConflictError (duplicate / constraint violation)
    StaleDataError   → ConflictError (row changed since it was read)
    OperationalError → OVRError 500 (connection / lock issues)

    Usage::

        db.session.add(obj)
        commit_or_raise()
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise ConflictError("Duplicate or constraint violation") from exc
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale write rejected: %s", exc)
        raise ConflictError(STALE_MESSAGE) from exc
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        raise OVRError("Database error") from exc


@contextmanager
def atomic():
    """Run a multi-step mutation; any failure rolls the session back.

    Flushes inside the block (audit rows flush eagerly) can already hit a
    version mismatch, so StaleDataError becomes ConflictError here too.

    Usage::

        with atomic():
            apply_transition(incident, "begin_final_actions", ctx)
            db.session.add(action)
        commit_or_raise()
    """
    try:
        yield
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale write rejected: %s", exc)
        raise ConflictError(STALE_MESSAGE) from exc
    except Exception:
        db.session.rollback()
        raise


def expected_version(data: dict):
    """Optional ``expected_version`` from a request body; must be an int."""
    value = data.get("expected_version")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("expected_version must be an integer",
                              details={"expected_version": "must be an integer"})
    return value
