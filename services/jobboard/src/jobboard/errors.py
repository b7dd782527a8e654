from __future__ import annotations


class JobBoardError(Exception):
    """Base class for failures that end a request with a client-facing status."""

    status_code = 500
    audit_status = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(JobBoardError):
    status_code = 400
    audit_status = "invalid"


class InvalidTransition(ValidationError):
    audit_status = "invalid_transition"


class Conflict(JobBoardError):
    status_code = 400
    audit_status = "conflict"


class Unauthorized(JobBoardError):
    status_code = 401
    audit_status = "unauthorized"


class Forbidden(JobBoardError):
    status_code = 403
    audit_status = "forbidden"


class NotFound(JobBoardError):
    status_code = 404
    audit_status = "not_found"
