from datetime import datetime, timezone
from decimal import Decimal
import unittest

import pytest

from expenseflow.errors import InvalidState
from expenseflow.form_state import (
    FormStore,
    MarkSaved,
    ResetForm,
    SetErrors,
    SetExpense,
    SetStep,
    initial_state,
    reduce,
    wizard_for,
)
from expenseflow.validation import SubmissionChecklist

SAVED_AT = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def test_initial_state_is_clean_travel_draft():
    state = initial_state("user123")

    assert state.expense["type"] == "travel"
    assert state.expense["currency"] == "BDT"
    assert state.expense["status"] == "draft"
    assert state.expense["fuelCost"] == Decimal("0")
    assert state.is_dirty is False
    assert state.generation == 0
    assert state.current_step == 1


def test_set_expense_merges_marks_dirty_and_revalidates():
    state = reduce(initial_state("user123"), SetExpense({"description": "short"}))

    assert state.is_dirty
    assert state.generation == 1
    assert state.expense["description"] == "short"
    assert state.expense["currency"] == "BDT"
    assert state.errors["description"] == "Description must be at least 10 characters"


def test_mark_saved_clears_dirty_for_current_generation():
    state = reduce(initial_state(), SetExpense({"description": "Business trip to client site"}))

    saved = reduce(state, MarkSaved(SAVED_AT, generation=state.generation, expense_id="exp-1"))

    assert saved.is_dirty is False
    assert saved.last_saved == SAVED_AT
    assert saved.expense["id"] == "exp-1"


def test_stale_mark_saved_keeps_newer_edits_dirty():
    first = reduce(initial_state(), SetExpense({"description": "Business trip to client site"}))
    second = reduce(first, SetExpense({"description": "Business trip to the client site"}))

    after = reduce(second, MarkSaved(SAVED_AT, generation=first.generation, expense_id="exp-1"))

    assert after.is_dirty is True
    assert after.last_saved is None
    assert after.expense["description"] == "Business trip to the client site"
    assert after.expense["id"] == "exp-1"


def test_step_errors_and_reset():
    state = reduce(initial_state("user123"), SetStep(3))
    state = reduce(state, SetErrors({"endDate": "End date must be on or after start date"}))
    assert state.current_step == 3
    assert state.has_errors

    reset = reduce(state, ResetForm("user123"))

    assert reset.current_step == 1
    assert reset.errors == {}
    assert reset.is_dirty is False
    assert reset.expense["userId"] == "user123"


def test_unknown_type_is_reported_on_the_type_field():
    state = reduce(initial_state("user123"), SetExpense({"type": "catering"}))

    assert state.errors == {"type": "Unknown expense type"}
    assert state.expense["type"] == "catering"
    assert state.is_dirty


def test_unknown_action_is_rejected():
    with pytest.raises(TypeError):
        reduce(initial_state(), object())


class FormStoreTestCase(unittest.TestCase):
    def test_subscribers_receive_previous_and_current(self):
        store = FormStore("user123")
        events = []
        unsubscribe = store.subscribe(lambda previous, current: events.append((previous, current)))

        store.update(description="Business trip to client site")
        unsubscribe()
        store.update(description="Ignored after unsubscribe")

        self.assertEqual(len(events), 1)
        previous, current = events[0]
        self.assertFalse(previous.is_dirty)
        self.assertTrue(current.is_dirty)

    def test_failing_listener_does_not_break_dispatch(self):
        store = FormStore()

        def broken(previous, current):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        with self.assertLogs("expenseflow.form_state", level="ERROR"):
            state = store.update(description="Business trip to client site")

        self.assertTrue(state.is_dirty)

    def test_ready_to_submit_requires_confirmations(self):
        store = FormStore("user123")

        ready = store.ready_to_submit(SubmissionChecklist(accuracy=True))

        self.assertFalse(ready)
        self.assertIn("confirmations.legitimacy", store.state.errors)
        self.assertIn("businessPurpose", store.state.errors)

    def test_reset_returns_to_initial_draft(self):
        store = FormStore("user123")
        store.update(type="maintenance", totalAmount=Decimal("40"))

        state = store.reset()

        self.assertEqual(state.expense["type"], "travel")
        self.assertFalse(state.is_dirty)


class WizardProgressTestCase(unittest.TestCase):
    def test_travel_sections_can_be_skipped(self):
        progress = wizard_for("travel").skip(1)

        self.assertEqual(progress.active_step, 2)
        self.assertIn(1, progress.skipped)

    def test_non_skippable_section_raises(self):
        with self.assertRaises(InvalidState):
            wizard_for("travel").skip(3)
        with self.assertRaises(InvalidState):
            wizard_for("maintenance").skip(1)
        with self.assertRaises(InvalidState):
            wizard_for("requisition").skip(2)

    def test_complete_advances_until_final_step(self):
        progress = wizard_for("maintenance")
        for number in (1, 2):
            progress = progress.complete(number)
        self.assertEqual(progress.active_step, 3)

        progress = progress.complete(3)

        self.assertEqual(progress.active_step, 3)
        self.assertTrue(progress.is_finished)

    def test_unknown_step_and_wizard(self):
        with self.assertRaises(InvalidState):
            wizard_for("travel").complete(5)
        with self.assertRaises(InvalidState):
            wizard_for("catering")
