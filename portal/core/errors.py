"""Error taxonomy shared by the engine, the request gate and the routes.

Every user-facing failure is a ``PortalError``; the app-level handler in
``portal.main`` renders it as JSON. ``DuplicateRecordError`` never reaches a
client: callers re-query by the same key and adopt the record they find.
"""
from typing import Any, Dict, Optional


class PortalError(Exception):
    status_code: int = 500
    reason: str = "internal_error"
    error: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None, **extra: Any):
        super().__init__(message or self.error)
        self.message = message or self.error
        if reason:
            self.reason = reason
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error, "reason": self.reason, "message": self.message}
        body.update(self.extra)
        return body


class IdentityAmbiguousError(PortalError):
    status_code = 400
    reason = "identity_ambiguous"
    error = "Unable to identify user"


class InvalidCredentialsError(PortalError):
    status_code = 401
    reason = "invalid_credentials"
    error = "Invalid credentials"


class AccessDeniedError(PortalError):
    """403 with one of ``no_subscription``, ``expired`` or ``setup_incomplete``."""

    status_code = 403
    reason = "no_subscription"
    error = "Subscription required"


class NotFoundError(PortalError):
    status_code = 404
    reason = "not_found"
    error = "Not found"


class ConflictError(PortalError):
    status_code = 409
    reason = "conflict"
    error = "Conflict"


class UpstreamUnavailableError(PortalError):
    status_code = 503
    reason = "service_unavailable"
    error = "Service not configured or unreachable"


class DuplicateRecordError(Exception):
    """A unique key (email, discord id, billing subscription id, ...) already exists."""

    def __init__(self, table: str, detail: str = ""):
        super().__init__(f"duplicate {table}: {detail}".strip())
        self.table = table
