"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to; ``src.api.main`` registers a
single handler that renders ``{"message": ...}``. Authentication errors also
clear both session cookies.
"""


class AtelierError(Exception):
    """Base class for expected, user-facing failures."""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(AtelierError):
    """No credential, or a credential that failed verification."""

    status_code = 401
    default_message = "Authentication required"


class SessionInvalidated(Unauthenticated):
    """Validly signed token whose session was rotated by another device."""

    default_message = "Session invalidated"


class Forbidden(AtelierError):
    """Identity is known but lacks the required permission."""

    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFound(AtelierError):
    """Absent, or outside the caller's workspace. Never distinguish the two."""

    status_code = 404
    default_message = "Not found"


class InvalidTransition(AtelierError):
    status_code = 400
    default_message = "Invalid status transition"


class Conflict(AtelierError):
    status_code = 409
    default_message = "Conflict"


class ValidationFailed(AtelierError):
    status_code = 400
    default_message = "Invalid input"
