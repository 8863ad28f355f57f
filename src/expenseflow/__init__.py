from .autosave import AutoSaveScheduler
from .conversion import form_to_record, record_to_form
from .errors import (
    BackendFailure,
    ExpenseFlowError,
    Forbidden,
    InvalidState,
    NetworkError,
    NotFound,
    RequestTimeout,
    Unauthorized,
    UnknownExpenseType,
    ValidationFailed,
)
from .form_state import ExpenseFormState, FormStore, WizardProgress, reduce, wizard_for
from .models import ExpenseRecord, UserProfile
from .policy import RolePolicy
from .validation import SubmissionChecklist, ValidationResult, validate_expense

__all__ = [
    "AutoSaveScheduler",
    "BackendFailure",
    "ExpenseFlowError",
    "ExpenseFormState",
    "ExpenseRecord",
    "Forbidden",
    "FormStore",
    "InvalidState",
    "NetworkError",
    "NotFound",
    "RequestTimeout",
    "RolePolicy",
    "SubmissionChecklist",
    "Unauthorized",
    "UnknownExpenseType",
    "UserProfile",
    "ValidationFailed",
    "ValidationResult",
    "WizardProgress",
    "form_to_record",
    "record_to_form",
    "reduce",
    "validate_expense",
    "wizard_for",
]
