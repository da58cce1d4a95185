"""
Error taxonomy for the timesheet engine.
Each error carries the HTTP status and machine-readable code the API layer renders.
"""
from typing import Optional


class TimesheetError(Exception):
    status_code = 400
    code = "timesheet_error"

    def __init__(self, detail: str, *, field: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.detail}
        if self.field:
            body["field"] = self.field
        return body


class NotFound(TimesheetError):
    status_code = 404
    code = "not_found"


class PermissionDenied(TimesheetError):
    status_code = 403
    code = "permission_denied"


class InvalidTransition(TimesheetError):
    status_code = 409
    code = "invalid_transition"


class StaleStateError(TimesheetError):
    """Another actor moved the record first. Re-fetch and decide; never retry blindly."""
    status_code = 409
    code = "stale_state"


class ConflictError(TimesheetError):
    status_code = 409
    code = "conflict"


class ValidationError(TimesheetError):
    status_code = 422
    code = "validation_error"


class DocumentGenerationError(TimesheetError):
    status_code = 500
    code = "document_generation_failed"
