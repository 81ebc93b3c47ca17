"""Error codes and the JSON error body every endpoint returns.

Body shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}}   # details optional

Usage::

    from ovr.utils.errors import api_error, E

    return api_error(E.CONFLICT_STATE, "Incident is closed", details={"current_status": "closed"})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Values of the ``code`` field. Clients branch on these, never on ``error``."""

    # The request must change before it can succeed
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    PAYLOAD_TOO_LARGE = "ERR_PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA = "ERR_UNSUPPORTED_MEDIA"

    # Sign in again, or ask for access
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"

    # Reload the incident and retry
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    RATE_LIMITED = "ERR_RATE_LIMITED"
    INTERNAL = "ERR_INTERNAL"


_STATUS_CODES = {
    400: (E.VALIDATION_INVALID,),
    401: (E.UNAUTHENTICATED,),
    403: (E.FORBIDDEN,),
    404: (E.NOT_FOUND,),
    409: (E.CONFLICT_STATE,),
    413: (E.PAYLOAD_TOO_LARGE,),
    415: (E.UNSUPPORTED_MEDIA,),
    429: (E.RATE_LIMITED,),
    500: (E.INTERNAL,),
}

HTTP_STATUS = {code: status for status, codes in _STATUS_CODES.items() for code in codes}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for Flask. ``status`` defaults from ``HTTP_STATUS``, else 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)
