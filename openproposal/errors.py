"""Error taxonomy shared by the core and the HTTP layer.

Each error carries the HTTP status it maps to and a stable machine-readable
``code``. The app renders them as ``{"error": code, "detail": message}``.
"""
from __future__ import annotations

from typing import Any


class OpenProposalError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, details: Any = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthenticationRequired(OpenProposalError):
    status_code = 401
    code = "authentication_required"
    default_message = "Authentication failed. Please login again."


class InsufficientPermissions(OpenProposalError):
    status_code = 403
    code = "insufficient_permissions"
    default_message = "You do not have permission to perform this action."


class NotFound(OpenProposalError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class ValidationFailed(OpenProposalError):
    status_code = 400
    code = "validation_failed"
    default_message = "Invalid input data"


class PrematureSubmission(OpenProposalError):
    status_code = 400
    code = "premature_submission"
    default_message = "Cannot submit review before proposal submission deadline"


class DeadlinePassed(OpenProposalError):
    status_code = 400
    code = "deadline_passed"
    default_message = "Review submission deadline has passed"


class DuplicateSubmission(OpenProposalError):
    status_code = 400
    code = "duplicate_submission"
    default_message = "Review already submitted"


class Conflict(OpenProposalError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists"


class RateLimited(OpenProposalError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests. Please try again later."
