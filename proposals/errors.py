from typing import Any, Dict, Optional


class ApiError(Exception):
    """Base error for every failure a workflow operation reports to its caller."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = meta or {}


class ValidationError(ApiError):
    """Malformed or missing input."""

    code = "validation_error"
    status_code = 400


class Unauthenticated(ApiError):
    code = "unauthenticated"
    status_code = 401


class Forbidden(ApiError):
    """Caller lacks the role or assignment required for the action."""

    code = "forbidden"
    status_code = 403


class NotFound(ApiError):
    code = "not_found"
    status_code = 404


class InvalidState(ApiError):
    """Action attempted from an application status that does not permit it."""

    code = "invalid_state"
    status_code = 409


class AlreadyVoted(ApiError):
    code = "already_voted"
    status_code = 409


class ConcurrentModification(ApiError):
    """Compare-and-swap retries on the approval map were exhausted."""

    code = "concurrent_modification"
    status_code = 409


class PreconditionFailed(ApiError):
    """A state-dependent business rule is not met."""

    code = "precondition_failed"
    status_code = 412


class ServiceUnavailable(ApiError):
    code = "service_unavailable"
    status_code = 503
