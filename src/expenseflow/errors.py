"""Typed errors shared by the submission protocol, the API and the client.

Every error carries a machine-readable ``code`` and the HTTP status the API
answers with, so handlers catch by type instead of parsing messages.
"""

from __future__ import annotations

from typing import Mapping


class ExpenseFlowError(Exception):
    code = "EXPENSEFLOW_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        return {"error": self.message}


class Unauthorized(ExpenseFlowError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ExpenseFlowError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Forbidden"


class NotFound(ExpenseFlowError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class InvalidState(ExpenseFlowError):
    """A state-machine precondition does not hold, e.g. submitting a non-draft."""

    code = "INVALID_STATE"
    status_code = 400
    default_message = "Invalid state"


class ValidationFailed(ExpenseFlowError):
    code = "VALIDATION_FAILED"
    status_code = 400
    default_message = "Invalid expense data"

    def __init__(self, message: str | None = None, errors: Mapping[str, str] | None = None):
        super().__init__(message)
        self.errors = dict(errors or {})

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        if self.errors:
            payload["details"] = self.errors
        return payload


class UnknownExpenseType(ValidationFailed):
    code = "UNKNOWN_EXPENSE_TYPE"

    def __init__(self, expense_type: object):
        self.expense_type = expense_type
        super().__init__(f"Unknown expense type: {expense_type}", {"type": "Unknown expense type"})


class BackendFailure(ExpenseFlowError):
    """Persistence or identity platform failure; the upstream cause stays in the log."""

    code = "BACKEND_FAILURE"
    status_code = 500


class NetworkError(ExpenseFlowError):
    code = "NETWORK_ERROR"
    status_code = 503
    default_message = "Network error"


class RequestTimeout(NetworkError):
    code = "TIMEOUT"
    status_code = 504
    default_message = "Request timed out"


STATUS_TO_ERROR: dict[int, type[ExpenseFlowError]] = {
    400: ValidationFailed,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    500: BackendFailure,
}

__all__ = [
    "ExpenseFlowError",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "InvalidState",
    "ValidationFailed",
    "UnknownExpenseType",
    "BackendFailure",
    "NetworkError",
    "RequestTimeout",
    "STATUS_TO_ERROR",
]
