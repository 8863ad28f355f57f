from decimal import Decimal
import sqlite3

import pytest

from conftest import BUSINESS_PURPOSE, RecordingEmailSender
from expenseflow.errors import Forbidden, InvalidState, NotFound, Unauthorized, ValidationFailed
from expenseflow.notifications import NotificationService
from expenseflow.repositories import AuditRepository, NotificationRepository
from expenseflow.services import SELF_APPROVAL_COMMENT, ExpenseSubmissionService
from expenseflow.storage import LocalObjectStorage


@pytest.fixture
def service(conn, email_sender, tmp_path):
    notifier = NotificationService(conn, email_sender, app_url="https://expenses.example.com")
    storage = LocalObjectStorage(base_dir=tmp_path / "storage")
    return ExpenseSubmissionService(conn, notifier=notifier, storage=storage)


@pytest.fixture
def submitted(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form())
    return service.submit(identity("user123"), expense.id)


def test_create_draft_scenario(service, identity, travel_form, conn):
    expense = service.create_draft(identity("user123"), travel_form())

    assert expense.id
    assert expense.status == "draft"
    assert expense.expense_number == "EXP-000001"
    assert expense.user_id == "user123"
    assert expense.description == "Business trip to client site"
    assert expense.total_amount == Decimal("1500")
    assert expense.expense_data["transportation_type"] == "car"
    assert service.get_expense(identity("user123"), expense.id) == expense

    audit = AuditRepository(conn).list_for_record("expenses", expense.id)
    assert [entry.action for entry in audit] == ["create"]


def test_expense_numbers_are_sequential(service, identity, travel_form, maintenance_form):
    first = service.create_draft(identity("user123"), travel_form())
    second = service.create_draft(identity("user123"), maintenance_form())

    assert (first.expense_number, second.expense_number) == ("EXP-000001", "EXP-000002")


def test_create_draft_ignores_client_supplied_server_fields(service, identity, travel_form):
    expense = service.create_draft(
        identity("user123"),
        travel_form(id="forged", status="approved", approverId="user123"),
    )

    assert expense.id != "forged"
    assert expense.status == "draft"
    assert expense.approver_id is None


def test_create_requires_identity(service, travel_form):
    with pytest.raises(Unauthorized):
        service.create_draft(None, travel_form())


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"totalAmount": "0"}, "totalAmount"),
        ({"description": "Trip"}, "description"),
        ({"businessPurpose": "x" * 199}, "businessPurpose"),
        ({"type": "catering"}, "type"),
    ],
)
def test_create_enforces_minimums(service, identity, travel_form, overrides, field):
    with pytest.raises(ValidationFailed) as excinfo:
        service.create_draft(identity("user123"), travel_form(**overrides))

    assert field in excinfo.value.errors


def test_business_purpose_of_200_characters_is_enough(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form(businessPurpose="x" * 200))

    assert service.submit(identity("user123"), expense.id).status == "submitted"


def test_submit_routes_to_submitters_manager(submitted, service, conn, email_sender):
    assert submitted.status == "submitted"
    assert submitted.submitted_at is not None
    assert submitted.assigned_approver_id == "manager1"

    notifications = NotificationRepository(conn).list_for_user("manager1")
    assert [n.type for n in notifications] == ["expense_submitted"]
    assert email_sender.sent[0]["to"] == "manager@example.com"
    assert "/approvals/" + submitted.id in email_sender.sent[0]["html"]


def test_submit_over_manager_limit_routes_to_highest_capable(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form(totalAmount="15000"))

    assert service.submit(identity("user123"), expense.id).assigned_approver_id == "manager2"


def test_submit_over_every_manager_limit_routes_to_admin(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form(totalAmount="50000"))

    assert service.submit(identity("user123"), expense.id).assigned_approver_id == "admin1"


def test_double_submit_is_invalid_state(submitted, service, identity):
    with pytest.raises(InvalidState):
        service.submit(identity("user123"), submitted.id)


def test_submit_by_other_user_is_forbidden(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form())

    with pytest.raises(Forbidden):
        service.submit(identity("user456"), expense.id)


def test_submit_unknown_expense(service, identity):
    with pytest.raises(NotFound):
        service.submit(identity("user123"), "missing")


def test_submit_checks_confirmations(service, identity, travel_form):
    from expenseflow.validation import SubmissionChecklist

    expense = service.create_draft(identity("user123"), travel_form())

    with pytest.raises(ValidationFailed) as excinfo:
        service.submit(identity("user123"), expense.id, SubmissionChecklist(accuracy=True))

    assert "confirmations.legitimacy" in excinfo.value.errors
    assert service.get_expense(identity("user123"), expense.id).status == "draft"


def test_self_approval_scenario(service, identity, travel_form):
    expense = service.create_draft(identity("manager2"), travel_form(totalAmount="8000"))

    approved = service.submit(identity("manager2"), expense.id)

    assert approved.status == "approved"
    assert approved.approver_id == "manager2"
    history = service.approval_history(identity("manager2"), expense.id)
    assert len(history) == 1
    assert history[0].action == "approved"
    assert history[0].comments == SELF_APPROVAL_COMMENT
    assert "Self-approved" in history[0].comments


def test_self_approval_above_single_transaction_limit_waits(service, identity, travel_form):
    expense = service.create_draft(identity("manager2"), travel_form(totalAmount="12000"))

    pending = service.submit(identity("manager2"), expense.id)

    assert pending.status == "submitted"
    assert pending.assigned_approver_id == "admin1"


def test_failed_self_approval_leaves_expense_submitted(service, identity, travel_form, monkeypatch):
    expense = service.create_draft(identity("manager2"), travel_form(totalAmount="8000"))

    def broken_insert(approval):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(service.approvals, "insert", broken_insert)
    result = service.submit(identity("manager2"), expense.id)

    assert result.status == "submitted"
    assert service.approvals.list_for_expense(expense.id) == []


def test_approving_a_draft_is_rejected(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form())

    with pytest.raises(InvalidState) as excinfo:
        service.decide(identity("manager1"), expense.id, "approved")

    assert excinfo.value.message == "Expense is not submitted for approval"


def test_manager_approves_within_limit(service, identity, travel_form, email_sender):
    expense = service.create_draft(identity("user123"), travel_form(totalAmount="5000"))
    service.submit(identity("user123"), expense.id)

    decided = service.decide(identity("manager1"), expense.id, "approved", "Looks good")

    assert decided.status == "approved"
    assert decided.approver_id == "manager1"
    assert decided.approval_notes == "Looks good"
    assert decided.approved_at is not None
    assert email_sender.sent[-1]["to"] == "user123@example.com"
    assert email_sender.sent[-1]["subject"] == "Expense Approved"


def test_manager_cannot_approve_over_limit(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form(totalAmount="5001"))
    service.submit(identity("user123"), expense.id)

    with pytest.raises(Forbidden):
        service.decide(identity("manager1"), expense.id, "approved")

    assert service.decide(identity("admin1"), expense.id, "rejected").status == "rejected"


def test_decide_rejects_bad_callers_and_actions(submitted, service, identity, conn):
    with pytest.raises(Unauthorized):
        service.decide(None, submitted.id, "approved")
    with pytest.raises(ValidationFailed):
        service.decide(identity("manager1"), submitted.id, "approve")
    with pytest.raises(NotFound):
        service.decide(identity("manager1"), "missing", "approved")
    with pytest.raises(NotFound):
        service.decide(identity("ghost"), submitted.id, "approved")
    with pytest.raises(Forbidden):
        service.decide(identity("finance1"), submitted.id, "approved")


def test_second_decision_is_invalid_state(submitted, service, identity):
    service.decide(identity("manager1"), submitted.id, "rejected", "Missing receipts")

    with pytest.raises(InvalidState):
        service.decide(identity("admin1"), submitted.id, "approved")


def test_notification_failure_does_not_fail_approval(conn, identity, travel_form, tmp_path):
    notifier = NotificationService(conn, RecordingEmailSender(fail=True))
    service = ExpenseSubmissionService(conn, notifier=notifier)
    expense = service.create_draft(identity("user123"), travel_form())
    service.submit(identity("user123"), expense.id)

    decided = service.decide(identity("manager1"), expense.id, "approved")

    assert decided.status == "approved"
    owner_notifications = NotificationRepository(conn).list_for_user("user123")
    assert [n.status for n in owner_notifications] == ["failed"]


def test_update_and_delete_drafts(service, identity, travel_form, maintenance_form):
    expense = service.create_draft(identity("user123"), travel_form())

    updated = service.update_draft(identity("user123"), expense.id, maintenance_form())
    assert updated.type == "maintenance"
    assert updated.expense_data["sub_category"] == "electrician"
    assert updated.expense_number == expense.expense_number

    with pytest.raises(Forbidden):
        service.delete_draft(identity("user456"), expense.id)

    service.delete_draft(identity("user123"), expense.id)
    with pytest.raises(NotFound):
        service.get_expense(identity("user123"), expense.id)


def test_submitted_expenses_are_frozen(submitted, service, identity, travel_form):
    with pytest.raises(InvalidState):
        service.update_draft(identity("user123"), submitted.id, travel_form())
    with pytest.raises(InvalidState):
        service.delete_draft(identity("user123"), submitted.id)


def test_list_filters_and_pending_approvals(service, identity, travel_form, requisition_form):
    draft = service.create_draft(identity("user123"), requisition_form())
    submitted = service.create_draft(identity("user123"), travel_form())
    service.submit(identity("user123"), submitted.id)

    assert [e.id for e in service.list_expenses(identity("user123"), status="draft")] == [draft.id]
    assert [e.id for e in service.list_expenses(identity("user123"), expense_type="travel")] == [submitted.id]
    assert service.list_expenses(identity("user456")) == []
    with pytest.raises(ValidationFailed):
        service.list_expenses(identity("user123"), status="archived")

    assert [e.id for e in service.pending_approvals(identity("manager1"))] == [submitted.id]
    assert [e.id for e in service.pending_approvals(identity("admin1"))] == [submitted.id]
    assert service.pending_approvals(identity("manager2")) == []
    with pytest.raises(Forbidden):
        service.pending_approvals(identity("user123"))


def test_read_access(submitted, service, identity, travel_form):
    draft = service.create_draft(identity("user123"), travel_form())

    assert service.get_expense(identity("manager1"), submitted.id).id == submitted.id
    assert service.get_expense(identity("finance1"), submitted.id).id == submitted.id
    with pytest.raises(Forbidden):
        service.get_expense(identity("user456"), submitted.id)
    with pytest.raises(Forbidden):
        service.get_expense(identity("manager1"), draft.id)


def test_approval_notes_are_append_only_on_decided_expenses(submitted, service, identity):
    with pytest.raises(InvalidState):
        service.add_approval_note(identity("manager1"), submitted.id, "Too early")

    service.decide(identity("manager1"), submitted.id, "approved", "Approved for Q1")
    noted = service.add_approval_note(identity("manager1"), submitted.id, "Reimbursed on 2026-03-20")

    assert noted.approval_notes == "Approved for Q1\nReimbursed on 2026-03-20"
    with pytest.raises(Forbidden):
        service.add_approval_note(identity("user123"), submitted.id, "Thanks")
    with pytest.raises(ValidationFailed):
        service.add_approval_note(identity("manager1"), submitted.id, "   ")


def test_attachments(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form())

    attachment = service.add_attachment(identity("user123"), expense.id, "receipt.png", "image/png", b"\x89PNG")

    assert attachment.file_name == "receipt.png"
    assert attachment.file_size == 4
    assert attachment.file_path.startswith("user123/")
    assert service.storage.download(attachment.file_path) == b"\x89PNG"
    assert service.list_attachments(identity("user123"), expense.id) == [attachment]

    with pytest.raises(ValidationFailed):
        service.add_attachment(identity("user123"), expense.id, "notes.txt", "text/plain", b"hello")
    with pytest.raises(Forbidden):
        service.add_attachment(identity("user456"), expense.id, "receipt.png", "image/png", b"\x89PNG")

    service.delete_draft(identity("user123"), expense.id)
    assert service.storage.list("user123") == []


def test_export_scope_depends_on_role(service, identity, travel_form):
    from io import BytesIO

    from openpyxl import load_workbook

    service.create_draft(identity("user123"), travel_form())
    service.create_draft(identity("user456"), travel_form(description="Second client site visit"))

    own = load_workbook(BytesIO(service.export_expenses(identity("user123")))).active
    everyone = load_workbook(BytesIO(service.export_expenses(identity("finance1")))).active

    assert [row[0] for row in own.iter_rows(min_row=4, max_row=4, values_only=True)] == ["EXP-000001"]
    assert expense_count(own) == 1
    assert expense_count(everyone) == 2


def expense_count(sheet):
    return next(row[1] for row in sheet.iter_rows(values_only=True) if row[0] == "Expense count")


def test_business_purpose_fixture_is_long_enough():
    assert len(BUSINESS_PURPOSE) >= 200


def test_create_rejects_end_date_before_start(service, identity, travel_form):
    with pytest.raises(ValidationFailed) as excinfo:
        service.create_draft(identity("user123"), travel_form(startDate="2026-03-04", endDate="2026-03-01"))

    assert excinfo.value.errors == {"endDate": "End date must be on or after start date"}


def test_create_rejects_sub_category_outside_category(service, identity, maintenance_form):
    with pytest.raises(ValidationFailed) as excinfo:
        service.create_draft(identity("user123"), maintenance_form(category="charges", subCategory="electrician"))

    assert "subCategory" in excinfo.value.errors


def test_update_rejects_inverted_dates(service, identity, travel_form):
    expense = service.create_draft(identity("user123"), travel_form())

    with pytest.raises(ValidationFailed):
        service.update_draft(identity("user123"), expense.id, travel_form(endDate="2026-02-01"))

    assert service.get_expense(identity("user123"), expense.id).expense_data["end_date"] == "2026-03-04"


def test_incomplete_draft_can_be_saved_but_not_submitted(service, identity, maintenance_form):
    expense = service.create_draft(identity("user123"), maintenance_form(serviceDate=None))

    with pytest.raises(ValidationFailed) as excinfo:
        service.submit(identity("user123"), expense.id)

    assert "serviceDate" in excinfo.value.errors
    assert service.get_expense(identity("user123"), expense.id).status == "draft"


def test_manager_cannot_decide_own_expense(service, identity, travel_form):
    expense = service.create_draft(identity("manager1"), travel_form(totalAmount="3000"))
    submitted = service.submit(identity("manager1"), expense.id)
    assert submitted.status == "submitted"
    assert submitted.assigned_approver_id == "manager2"

    with pytest.raises(Forbidden):
        service.decide(identity("manager1"), expense.id, "approved")

    assert service.decide(identity("manager2"), expense.id, "approved").approver_id == "manager2"
