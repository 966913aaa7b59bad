"""Domain errors translated to JSON responses by the app factory."""
from __future__ import annotations


class ServioError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message}


class ValidationError(ServioError):
    """Missing or malformed input. Never retried."""

    status_code = 400


class AuthError(ServioError):
    status_code = 401


class PermissionDeniedError(AuthError):
    status_code = 403


class NotFoundError(ServioError):
    status_code = 404


class StateConflictError(ServioError):
    """A booking or payment guard rejected the requested transition."""

    status_code = 400


class DependencyError(ServioError):
    status_code = 500


class NotificationError(DependencyError):
    status_code = 503
