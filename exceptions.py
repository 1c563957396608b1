"""
Leave workflow exceptions.

Every error the lifecycle raises carries the HTTP status the route layer
should answer with. Routers catch LeaveServiceError and turn it into an
HTTPException; notification failures are wrapped in DependencyError and only
ever logged.
"""

from typing import Any, Dict, Optional


class LeaveServiceError(Exception):
    """Base class for all leave workflow errors."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message='{self.message}', status_code={self.status_code})"


class ValidationError(LeaveServiceError):
    """Missing or malformed input."""
    status_code = 400


class ConflictError(LeaveServiceError):
    """Date overlap, or the request row changed under us."""
    status_code = 400


class NotFoundError(LeaveServiceError):
    status_code = 404


class HodResolutionError(NotFoundError):
    """Employee has an assigned manager who is not an HOD."""


class ForbiddenError(LeaveServiceError):
    status_code = 403


class DependencyError(LeaveServiceError):
    """Email or live-push failure. Logged, never surfaced to the caller."""
    status_code = 502


class IntegrityError(LeaveServiceError):
    """Database failure while persisting a lifecycle change; the session is rolled back."""
    status_code = 500
