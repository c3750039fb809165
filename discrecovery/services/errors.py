from typing import Optional


class RecoveryError(Exception):
    """Base class for expected domain outcomes of a recovery operation."""

    code = "recovery_error"
    status_code = 400

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "reason": self.reason}


class InvalidInput(RecoveryError):
    """Raised when operation arguments fail validation."""

    code = "invalid_input"
    status_code = 400


class NotFound(RecoveryError):
    """Raised when a referenced disc, event or proposal does not exist."""

    code = "not_found"
    status_code = 404


class Forbidden(RecoveryError):
    """Raised when the caller is not a participant or has the wrong role."""

    code = "forbidden"
    status_code = 403


class PreconditionFailed(RecoveryError):
    """Raised when the current state no longer allows the transition."""

    code = "precondition_failed"
    status_code = 409


class Conflict(RecoveryError):
    """Raised when an overlapping active recovery already exists."""

    code = "conflict"
    status_code = 409


class StorageFault(Exception):
    """Raised when an atomic unit could not commit for infrastructure reasons.

    Not a RecoveryError: it is never a domain outcome, and the unit has
    always been rolled back by the time it is raised.
    """

    code = "storage_fault"
    status_code = 503

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} could not be committed")
        self.operation = operation
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": "Storage temporarily unavailable", "reason": None}
