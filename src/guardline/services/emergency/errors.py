"""
Emergency Service Errors

Typed failures raised by the stores and the coordinator. Each carries a
stable ``kind`` and the HTTP status the web layer answers with.
"""

from typing import Any, Dict, Optional


class EmergencyError(Exception):
    """Base class for emergency subsystem errors"""
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class AuthorizationError(EmergencyError):
    """The actor's role lacks the required capability"""
    kind = "forbidden"
    status_code = 403


class NotFoundError(EmergencyError):
    """The referenced alert, session or location does not exist"""
    kind = "not_found"
    status_code = 404


class NotSharingError(NotFoundError):
    """The target user is not sharing their location right now"""
    kind = "not_sharing"


class ConflictError(EmergencyError):
    """An active SOS alert already exists for the user"""
    kind = "conflict"
    status_code = 409

    def __init__(self, message: str, existing: Optional[Any] = None):
        super().__init__(message)
        self.existing = existing


class InvalidStateError(EmergencyError):
    """The record is in a terminal state and cannot transition"""
    kind = "invalid_state"
    status_code = 422


class TransientError(EmergencyError):
    """Persistence was busy or timed out; the caller may retry"""
    kind = "unavailable"
    status_code = 503


class ValidationError(EmergencyError):
    """Request input is malformed or out of range"""
    kind = "validation"
    status_code = 400
