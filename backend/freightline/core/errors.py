"""Domain error taxonomy shared by services and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


LOAD_ACCESS_DENIED = "Load not found or access denied"
BID_ACCESS_DENIED = "Bid not found or access denied"
DOCUMENT_ACCESS_DENIED = "Document not found or access denied"
GEOFENCE_ACCESS_DENIED = "Geofence not found or access denied"


class FreightError(Exception):
    """Base class for all domain failures raised by the service layer."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class UnauthenticatedError(FreightError):
    """Caller identity cannot be resolved."""

    kind = "unauthenticated"
    status_code = 401


class ForbiddenError(FreightError):
    """Caller is known and the target exists, but policy denies the action."""

    kind = "forbidden"
    status_code = 403


class NotFoundError(FreightError):
    """Referenced entity does not exist.

    A concealed instance is rendered exactly like a ForbiddenError carrying
    the same message, so unauthorized callers cannot learn that it exists.
    """

    kind = "not_found"
    status_code = 404

    def __init__(self, message: str, *, conceal: bool = False, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.conceal = conceal

    def to_dict(self) -> Dict[str, Any]:
        if self.conceal:
            return {"error": ForbiddenError.kind, "detail": self.message}
        return super().to_dict()

    @property
    def public_status_code(self) -> int:
        return ForbiddenError.status_code if self.conceal else self.status_code


class InvalidStateError(FreightError):
    """Action violates a state-machine precondition."""

    kind = "invalid_state"
    status_code = 400


class ConflictError(FreightError):
    """A uniqueness or version invariant would be violated."""

    kind = "conflict"
    status_code = 409


SECURITY_ERRORS = (UnauthenticatedError, ForbiddenError)


def public_status_code(exc: FreightError) -> int:
    if isinstance(exc, NotFoundError):
        return exc.public_status_code
    return exc.status_code
