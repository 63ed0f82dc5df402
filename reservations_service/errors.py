from typing import Any, Dict, Optional

from fastapi import status


class ReservationError(Exception):
    """
    Base class for every failure the reservation core reports to callers.

    Attributes
    ----------
    status_code : int
        HTTP status the error maps to.
    code : str
        Machine-readable error name returned as ``error`` in the response body.
    message : str
        Human-readable, actionable description.
    details : dict
        Structured data the client needs to act on the error
        (diffs, conflict lists, lock holder, ...).
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "InternalError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class VersionConflict(ReservationError):
    """The supplied change key is stale, or a conditional write matched zero rows."""

    status_code = status.HTTP_409_CONFLICT
    code = "ConflictError"


class SchedulingConflict(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    code = "SchedulingConflict"


class LockHeld(ReservationError):
    status_code = status.HTTP_423_LOCKED
    code = "ResourceLocked"


class Forbidden(ReservationError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "Forbidden"


class ValidationError(ReservationError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ValidationError"


class InvalidTransition(ReservationError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "InvalidTransition"


class NotFound(ReservationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NotFound"


class ExternalServiceError(ReservationError):
    """
    A call to an external collaborator (calendar proxy) failed.

    Never surfaced as an HTTP error: the approval that triggered the call
    stays committed and the failure is reported as a warning.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "ExternalServiceError"
