"""
Platform-wide exception hierarchy.

Services raise these; the app-level handlers registered in
``ovr.create_app`` turn them into ``{error, code, details?}``
responses with a consistent HTTP status. Nothing here is retried.

Usage:
    from ovr.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Incident", resource_id="OVR-2026-001")
    raise ValidationError("Invalid request body", details={"title": "..."})
"""

from ovr.utils.errors import E


class OVRError(Exception):
    """Base class. ``status`` and ``code`` drive the HTTP response."""

    status = 500
    code = E.INTERNAL

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(OVRError):
    """Malformed or missing input, or a business field rule (e.g. a rejection
    reason that is too short).

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown. Keys are field names; values are
                 error descriptions.
    """

    status = 400
    code = E.VALIDATION_INVALID


class AuthenticationError(OVRError):
    """No usable identity on the request."""

    status = 401
    code = E.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class AuthorizationError(OVRError):
    """The acting user's roles do not satisfy the required predicate."""

    status = 403
    code = E.FORBIDDEN

    def __init__(self, message: str = "Access denied", required: list[str] | None = None) -> None:
        details = {"required_roles": sorted(required)} if required else None
        super().__init__(message, details)


class NotFoundError(OVRError):
    """Raised when a requested resource does not exist for the caller.

    Used for BOTH genuinely missing records AND records the caller is not
    allowed to see. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "Incident", "Location").
        resource_id: The key that was looked up. Included in logs.
    """

    status = 404
    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")

    def __str__(self) -> str:
        if self.resource_id is None:
            return self.message
        return f"{self.resource} id={self.resource_id} not found"


class ConflictError(OVRError):
    """The request is well-formed but conflicts with the current state:
    a transition with no outbound edge from the current status, a closure
    attempted with open corrective actions, a stale version, or a duplicate
    unique value.

    Args:
        message: Human-readable explanation.
        current_status: Status of the record at the time of the request.
    """

    status = 409
    code = E.CONFLICT_STATE

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.current_status = current_status
        details = dict(details or {})
        if current_status is not None:
            details.setdefault("current_status", current_status)
        super().__init__(message, details)
