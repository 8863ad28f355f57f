"""In-progress expense draft held as a pure reducer.

``reduce`` never touches the network; ``FormStore`` wraps it and publishes
``(previous, current)`` state pairs to subscribers such as the auto-save
scheduler.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Union

from .errors import InvalidState, UnknownExpenseType
from .models import DEFAULT_CURRENCY
from .validation import SubmissionChecklist, check_submission_readiness, validate_expense

logger = logging.getLogger(__name__)


def initial_expense(user_id: str = "") -> dict[str, Any]:
    today = date.today()
    return {
        "type": "travel",
        "userId": user_id,
        "status": "draft",
        "totalAmount": Decimal("0"),
        "currency": DEFAULT_CURRENCY,
        "description": "",
        "businessPurpose": "",
        "startDate": today,
        "endDate": today,
        "startLocation": {"address": ""},
        "endLocation": {"address": ""},
        "transportationType": "car",
        "roundTrip": False,
        "fuelCost": Decimal("0"),
        "tollCharges": Decimal("0"),
        "accommodationCost": Decimal("0"),
        "perDiemRate": Decimal("0"),
    }


@dataclass(frozen=True)
class ExpenseFormState:
    expense: Mapping[str, Any]
    current_step: int = 1
    is_dirty: bool = False
    errors: Mapping[str, str] = field(default_factory=dict)
    last_saved: Optional[datetime] = None
    generation: int = 0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


def initial_state(user_id: str = "") -> ExpenseFormState:
    return ExpenseFormState(expense=initial_expense(user_id))


@dataclass(frozen=True)
class SetExpense:
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class SetStep:
    step: int


@dataclass(frozen=True)
class SetErrors:
    errors: Mapping[str, str]


@dataclass(frozen=True)
class MarkSaved:
    timestamp: datetime
    # Generation the save was started from; None means "current".
    generation: Optional[int] = None
    expense_id: Optional[str] = None


@dataclass(frozen=True)
class ResetForm:
    user_id: str = ""


Action = Union[SetExpense, SetStep, SetErrors, MarkSaved, ResetForm]


def form_errors(expense: Mapping[str, Any]) -> dict[str, str]:
    """Field errors for the draft; an unknown type is reported on ``type``."""
    try:
        return validate_expense(expense).errors
    except UnknownExpenseType as exc:
        return dict(exc.errors)


def reduce(state: ExpenseFormState, action: Action) -> ExpenseFormState:
    if isinstance(action, SetExpense):
        expense = {**state.expense, **action.payload}
        return replace(
            state,
            expense=expense,
            is_dirty=True,
            errors=form_errors(expense),
            generation=state.generation + 1,
        )
    if isinstance(action, SetStep):
        return replace(state, current_step=action.step)
    if isinstance(action, SetErrors):
        return replace(state, errors=dict(action.errors))
    if isinstance(action, MarkSaved):
        expense = state.expense
        if action.expense_id and not expense.get("id"):
            expense = {**expense, "id": action.expense_id}
        if action.generation is not None and action.generation != state.generation:
            # Edits landed while the save was in flight; keep them dirty.
            return replace(state, expense=expense)
        return replace(state, expense=expense, is_dirty=False, last_saved=action.timestamp)
    if isinstance(action, ResetForm):
        return initial_state(action.user_id)
    raise TypeError(f"Unknown form action: {action!r}")


Listener = Callable[[ExpenseFormState, ExpenseFormState], None]


class FormStore:
    """Holds the form state and notifies subscribers after every dispatch."""

    def __init__(self, user_id: str = "", state: Optional[ExpenseFormState] = None):
        self.user_id = user_id
        self._state = state or initial_state(user_id)
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()

    @property
    def state(self) -> ExpenseFormState:
        return self._state

    def dispatch(self, action: Action) -> ExpenseFormState:
        with self._lock:
            previous = self._state
            self._state = reduce(previous, action)
            current = self._state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(previous, current)
            except Exception:
                logger.exception("Form state listener failed")
        return current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update(self, **fields: Any) -> ExpenseFormState:
        return self.dispatch(SetExpense(fields))

    def reset(self) -> ExpenseFormState:
        return self.dispatch(ResetForm(self.user_id))

    def validate_form(self) -> bool:
        errors = form_errors(self._state.expense)
        if errors:
            self.dispatch(SetErrors(errors))
        return not errors

    def ready_to_submit(self, checklist: SubmissionChecklist) -> bool:
        expense = self._state.expense
        errors = {**form_errors(expense), **check_submission_readiness(expense, checklist)}
        if errors:
            self.dispatch(SetErrors(errors))
            return False
        return True


@dataclass(frozen=True)
class WizardStep:
    number: int
    title: str
    skippable: bool = False


@dataclass(frozen=True)
class WizardProgress:
    """UI-only step tracker layered on top of the form state."""

    steps: tuple[WizardStep, ...]
    active_step: int = 1
    completed: frozenset[int] = frozenset()
    skipped: frozenset[int] = frozenset()

    @property
    def final_step(self) -> int:
        return self.steps[-1].number

    @property
    def is_finished(self) -> bool:
        return all(s.number in self.completed or s.number in self.skipped for s in self.steps)

    def step(self, number: int) -> WizardStep:
        for candidate in self.steps:
            if candidate.number == number:
                return candidate
        raise InvalidState(f"Unknown wizard step {number}")

    def complete(self, number: int) -> WizardProgress:
        self.step(number)
        return replace(
            self,
            completed=self.completed | {number},
            active_step=self._advance(number),
        )

    def skip(self, number: int) -> WizardProgress:
        if not self.step(number).skippable:
            raise InvalidState(f"Section {number} cannot be skipped")
        return replace(
            self,
            skipped=self.skipped | {number},
            active_step=self._advance(number),
        )

    def _advance(self, number: int) -> int:
        return number + 1 if number < self.final_step else self.active_step


TRAVEL_STEPS = (
    WizardStep(1, "Transportation Details", skippable=True),
    WizardStep(2, "Route & Location Details", skippable=True),
    WizardStep(3, "Vehicle & Cost Details"),
    WizardStep(4, "Food & Accommodation", skippable=True),
)
MAINTENANCE_STEPS = (
    WizardStep(1, "Maintenance Category"),
    WizardStep(2, "Subcategory"),
    WizardStep(3, "Detailed Information"),
)
REQUISITION_STEPS = (
    WizardStep(1, "Service Type"),
    WizardStep(2, "Service Details"),
    WizardStep(3, "Documentation"),
)

_WIZARDS = {
    "travel": TRAVEL_STEPS,
    "maintenance": MAINTENANCE_STEPS,
    "requisition": REQUISITION_STEPS,
}


def wizard_for(expense_type: str) -> WizardProgress:
    try:
        return WizardProgress(steps=_WIZARDS[expense_type])
    except KeyError:
        raise InvalidState(f"No wizard for expense type {expense_type!r}") from None
