"""Server-side expense lifecycle.

Every operation takes the caller's ``Identity`` explicitly and either returns
the stored result or raises one of the ``expenseflow.errors`` types. Status
changes are conditional updates (``WHERE status = ?``); losing that race is
reported as ``InvalidState`` and never retried.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from .conversion import form_to_record, record_to_form
from .errors import (
    BackendFailure,
    ExpenseFlowError,
    Forbidden,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from .export import ExpenseExportService
from .identity import Identity
from .models import (
    EXPENSE_STATUSES,
    EXPENSE_TYPES,
    TERMINAL_STATUSES,
    ApprovalRecord,
    Attachment,
    AuditLogEntry,
    ExpenseRecord,
    UserProfile,
)
from .notifications import NotificationService
from .policy import RolePolicy
from .repositories import (
    ApprovalRepository,
    AttachmentRepository,
    AuditRepository,
    ExpenseRepository,
    ProfileRepository,
    utc_now,
)
from .storage import LocalObjectStorage
from .validation import (
    SubmissionChecklist,
    check_draft_consistency,
    check_draft_minimums,
    check_submission_readiness,
    validate_expense,
)

logger = logging.getLogger(__name__)

APPROVAL_ACTIONS = ("approved", "rejected")
SELF_APPROVAL_COMMENT = "Self-approved: amount within the submitter's single transaction limit"

# Roles that may read any non-draft expense.
REVIEWER_ROLES = ("finance", "manager", "admin")


class ExpenseSubmissionService:
    def __init__(
        self,
        conn: sqlite3.Connection,
        notifier: Optional[NotificationService] = None,
        storage: Optional[LocalObjectStorage] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.conn = conn
        self.notifier = notifier
        self.storage = storage
        self._clock = clock
        self.expenses = ExpenseRepository(conn)
        self.profiles = ProfileRepository(conn)
        self.approvals = ApprovalRepository(conn)
        self.attachments = AttachmentRepository(conn)
        self.audit = AuditRepository(conn)

    # -- drafts -----------------------------------------------------------

    def create_draft(self, identity: Optional[Identity], form: Mapping[str, Any]) -> ExpenseRecord:
        identity = _require(identity)
        _check_minimums(form)
        record = replace(
            form_to_record(form, user_id=identity.user_id),
            id=None,
            status="draft",
            assigned_approver_id=None,
            approver_id=None,
            approval_notes=None,
            submitted_at=None,
            approved_at=None,
        )
        with self.conn:
            stored = self.expenses.insert(record)
            self._audit(identity, "create", stored.id, None, _snapshot(stored))
        logger.info(
            "Draft expense created",
            extra={"expense_id": stored.id, "expense_number": stored.expense_number},
        )
        return stored

    def update_draft(self, identity: Optional[Identity], expense_id: str, form: Mapping[str, Any]) -> ExpenseRecord:
        identity = _require(identity)
        existing = self._owned(identity, expense_id, "You can only edit your own expenses")
        if not existing.is_draft:
            raise InvalidState("Only draft expenses can be edited")
        _check_minimums(form)
        record = form_to_record(form, user_id=existing.user_id)
        with self.conn:
            if not self.expenses.update_draft(expense_id, record):
                raise InvalidState("Only draft expenses can be edited")
            self._audit(identity, "update", expense_id, _snapshot(existing), _snapshot(record))
        logger.info("Draft expense updated", extra={"expense_id": expense_id})
        return self._get(expense_id)

    def delete_draft(self, identity: Optional[Identity], expense_id: str) -> None:
        identity = _require(identity)
        existing = self._owned(identity, expense_id, "You can only delete your own expenses")
        if not existing.is_draft:
            raise InvalidState("Only draft expenses can be deleted")
        attachments = self.attachments.list_for_expense(expense_id)
        with self.conn:
            if not self.expenses.delete_draft(expense_id):
                raise InvalidState("Only draft expenses can be deleted")
            self._audit(identity, "delete", expense_id, _snapshot(existing), None)
        logger.info("Draft expense deleted", extra={"expense_id": expense_id})
        if self.storage is not None:
            for attachment in attachments:
                self.storage.delete(attachment.file_path)

    # -- lifecycle --------------------------------------------------------

    def submit(
        self,
        identity: Optional[Identity],
        expense_id: str,
        checklist: Optional[SubmissionChecklist] = None,
    ) -> ExpenseRecord:
        identity = _require(identity)
        expense = self._owned(identity, expense_id, "You can only submit your own expenses")
        if not expense.is_draft:
            raise InvalidState("Only draft expenses can be submitted")

        form = record_to_form(expense)
        errors = {**validate_expense(form).errors, **check_draft_minimums(form)}
        if checklist is not None:
            errors.update(check_submission_readiness(form, checklist))
        if errors:
            raise ValidationFailed("Invalid expense data", errors)

        submitter = self.profiles.get(identity.user_id)
        approver = self._route_approver(submitter, expense.total_amount, identity.user_id)
        now = self._clock()
        with self.conn:
            moved = self.expenses.transition(
                expense_id,
                "draft",
                "submitted",
                submitted_at=now,
                assigned_approver_id=approver.id if approver else None,
            )
            if not moved:
                raise InvalidState("Only draft expenses can be submitted")
            self._audit(identity, "submit", expense_id, {"status": "draft"}, {"status": "submitted"})

        if approver is None:
            logger.warning("No eligible approver found", extra={"expense_id": expense_id})
        logger.info("Expense submitted", extra={"expense_id": expense_id})

        if submitter is not None and RolePolicy(submitter).can_self_approve(expense.total_amount):
            self._self_approve(identity, expense_id, submitter)
        elif approver is not None and self.notifier is not None:
            self.notifier.notify_expense_submitted(self._get(expense_id), submitter, approver)
        return self._get(expense_id)

    def decide(
        self,
        identity: Optional[Identity],
        expense_id: str,
        action: str,
        notes: Optional[str] = None,
    ) -> ExpenseRecord:
        identity = _require(identity)
        if action not in APPROVAL_ACTIONS:
            raise ValidationFailed("Invalid action", {"action": "Must be 'approved' or 'rejected'"})
        expense = self._get(expense_id)
        if expense.user_id == identity.user_id:
            raise Forbidden("You cannot approve your own expense")
        approver = self.profiles.get(identity.user_id)
        if approver is None:
            raise NotFound("Approver profile not found")

        policy = RolePolicy(approver)
        if not (policy.is_admin or policy.is_manager):
            raise Forbidden("Only managers and admins can approve expenses")
        if not policy.can_approve_expense(expense.total_amount):
            raise Forbidden("Insufficient approval authority")
        if expense.status != "submitted":
            raise InvalidState("Expense is not submitted for approval")

        now = self._clock()
        with self.conn:
            moved = self.expenses.transition(
                expense_id,
                "submitted",
                action,
                approver_id=approver.id,
                approved_at=now,
                approval_notes=notes,
            )
            if not moved:
                raise InvalidState("Expense is not submitted for approval")
            self.approvals.insert(
                ApprovalRecord(
                    expense_id=expense_id,
                    approver_id=approver.id,
                    action=action,
                    comments=notes or f"Expense {action}",
                    approved_at=now,
                )
            )
            self._audit(identity, action, expense_id, {"status": "submitted"}, {"status": action})

        decided = self._get(expense_id)
        logger.info("Expense decided", extra={"expense_id": expense_id, "status": action})
        if self.notifier is not None:
            owner = self.profiles.get(decided.user_id)
            self.notifier.notify_expense_status(decided, owner, approver, action, notes)
        return decided

    def add_approval_note(self, identity: Optional[Identity], expense_id: str, note: str) -> ExpenseRecord:
        identity = _require(identity)
        note = (note or "").strip()
        if not note:
            raise ValidationFailed("Note is required", {"note": "Note is required"})
        expense = self._get(expense_id)
        if expense.status not in TERMINAL_STATUSES:
            raise InvalidState("Notes can only be added to approved or rejected expenses")
        if identity.user_id != expense.approver_id and not RolePolicy(self.profiles.get(identity.user_id)).is_admin:
            raise Forbidden("Only the approver can add notes")

        with self.conn:
            if not self.expenses.append_approval_note(expense_id, note):
                raise InvalidState("Notes can only be added to approved or rejected expenses")
            self._audit(identity, "note", expense_id, None, {"note": note})
        return self._get(expense_id)

    # -- reads ------------------------------------------------------------

    def list_expenses(
        self,
        identity: Optional[Identity],
        status: Optional[str] = None,
        expense_type: Optional[str] = None,
    ) -> list[ExpenseRecord]:
        identity = _require(identity)
        if status is not None and status not in EXPENSE_STATUSES:
            raise ValidationFailed("Invalid status filter", {"status": "Unknown status"})
        if expense_type is not None and expense_type not in EXPENSE_TYPES:
            raise ValidationFailed("Invalid type filter", {"type": "Unknown expense type"})
        return self.expenses.list_for_user(identity.user_id, status=status, expense_type=expense_type)

    def get_expense(self, identity: Optional[Identity], expense_id: str) -> ExpenseRecord:
        identity = _require(identity)
        expense = self._get(expense_id)
        if not self._can_read(identity, expense):
            raise Forbidden("You do not have access to this expense")
        return expense

    def pending_approvals(self, identity: Optional[Identity]) -> list[ExpenseRecord]:
        identity = _require(identity)
        policy = RolePolicy(self.profiles.get(identity.user_id))
        if policy.is_admin:
            return self.expenses.list_pending()
        if policy.is_manager:
            return self.expenses.list_pending(identity.user_id)
        raise Forbidden("Only managers and admins can review approvals")

    def approval_history(self, identity: Optional[Identity], expense_id: str) -> list[ApprovalRecord]:
        self.get_expense(identity, expense_id)
        return self.approvals.list_for_expense(expense_id)

    # -- attachments ------------------------------------------------------

    def add_attachment(
        self,
        identity: Optional[Identity],
        expense_id: str,
        file_name: str,
        content_type: Optional[str],
        content: bytes,
        description: Optional[str] = None,
    ) -> Attachment:
        identity = _require(identity)
        if self.storage is None:
            raise BackendFailure("File storage is not configured")
        expense = self._owned(identity, expense_id, "You can only attach files to your own expenses")
        if not expense.is_draft:
            raise InvalidState("Attachments can only be added to draft expenses")

        stored_object = self.storage.upload(identity.user_id, file_name, content_type, content)
        try:
            with self.conn:
                attachment = self.attachments.insert(
                    Attachment(
                        expense_id=expense_id,
                        file_name=stored_object.file_name,
                        file_path=stored_object.key,
                        file_type=stored_object.file_type,
                        file_size=stored_object.size,
                        description=description,
                    )
                )
                self._audit(identity, "attach", expense_id, None, {"file_path": stored_object.key})
        except sqlite3.Error:
            self.storage.delete(stored_object.key)
            raise
        logger.info("Attachment stored", extra={"expense_id": expense_id, "key": stored_object.key})
        return attachment

    def list_attachments(self, identity: Optional[Identity], expense_id: str) -> list[Attachment]:
        self.get_expense(identity, expense_id)
        return self.attachments.list_for_expense(expense_id)

    # -- export -----------------------------------------------------------

    def export_expenses(self, identity: Optional[Identity], month: Optional[str] = None) -> bytes:
        """Workbook of the caller's expenses; reviewers get everybody's."""
        identity = _require(identity)
        policy = RolePolicy(self.profiles.get(identity.user_id))
        if policy.has_any_role(REVIEWER_ROLES):
            expenses = self.expenses.list_all()
        else:
            expenses = self.expenses.list_for_user(identity.user_id)
        return ExpenseExportService().render(expenses, month)

    # -- internals --------------------------------------------------------

    def _get(self, expense_id: str) -> ExpenseRecord:
        expense = self.expenses.get(expense_id)
        if expense is None:
            raise NotFound("Expense not found")
        return expense

    def _owned(self, identity: Identity, expense_id: str, message: str) -> ExpenseRecord:
        expense = self._get(expense_id)
        if expense.user_id != identity.user_id:
            raise Forbidden(message)
        return expense

    def _can_read(self, identity: Identity, expense: ExpenseRecord) -> bool:
        if expense.user_id == identity.user_id:
            return True
        if expense.is_draft:
            return False
        if identity.user_id in (expense.assigned_approver_id, expense.approver_id):
            return True
        return RolePolicy(self.profiles.get(identity.user_id)).has_any_role(REVIEWER_ROLES)

    def _route_approver(
        self,
        submitter: Optional[UserProfile],
        amount: Decimal,
        submitter_id: str,
    ) -> Optional[UserProfile]:
        """Submitter's manager if able, else the highest-limit able manager, else an admin."""
        if submitter is not None and submitter.manager_id and submitter.manager_id != submitter_id:
            manager = self.profiles.get(submitter.manager_id)
            if manager is not None and RolePolicy(manager).can_approve_expense(amount):
                return manager

        able = [
            manager
            for manager in self.profiles.list_by_role("manager")
            if manager.id != submitter_id and RolePolicy(manager).can_approve_expense(amount)
        ]
        if able:
            return max(able, key=lambda manager: manager.approval_limit)

        admins = [admin for admin in self.profiles.list_by_role("admin") if admin.id != submitter_id]
        return admins[0] if admins else None

    def _self_approve(self, identity: Identity, expense_id: str, submitter: UserProfile) -> None:
        now = self._clock()
        try:
            with self.conn:
                self.approvals.insert(
                    ApprovalRecord(
                        expense_id=expense_id,
                        approver_id=submitter.id,
                        action="approved",
                        comments=SELF_APPROVAL_COMMENT,
                        approved_at=now,
                    )
                )
                moved = self.expenses.transition(
                    expense_id,
                    "submitted",
                    "approved",
                    approver_id=submitter.id,
                    approved_at=now,
                    approval_notes=SELF_APPROVAL_COMMENT,
                )
                if not moved:
                    raise InvalidState("Expense is no longer submitted")
                self._audit(identity, "self_approve", expense_id, {"status": "submitted"}, {"status": "approved"})
        except (sqlite3.Error, ExpenseFlowError):
            logger.exception("Self-approval failed; expense left submitted", extra={"expense_id": expense_id})
            return
        logger.info("Expense self-approved", extra={"expense_id": expense_id})

    def _audit(
        self,
        identity: Identity,
        action: str,
        record_id: str,
        old_values: Optional[dict[str, Any]],
        new_values: Optional[dict[str, Any]],
    ) -> None:
        self.audit.record(
            AuditLogEntry(
                user_id=identity.user_id,
                action=action,
                table_name="expenses",
                record_id=record_id,
                old_values=old_values,
                new_values=new_values,
                created_at=self._clock(),
            )
        )


def _require(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise Unauthorized()
    return identity


def _check_minimums(form: Mapping[str, Any]) -> None:
    errors = {**check_draft_consistency(form), **check_draft_minimums(form)}
    if errors:
        raise ValidationFailed("Invalid expense data", errors)


def _snapshot(record: ExpenseRecord) -> dict[str, Any]:
    return {
        "type": record.type,
        "status": record.status,
        "total_amount": str(record.total_amount),
        "currency": record.currency,
        "description": record.description,
    }
