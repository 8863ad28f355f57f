from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from .conversion import unpack_payload
from .errors import BackendFailure, ValidationFailed
from .models import (
    ApprovalRecord,
    Attachment,
    AuditLogEntry,
    ExpenseRecord,
    Notification,
    UserProfile,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json(value: Optional[dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


class ExpenseRepository:
    # Columns a status transition may stamp alongside the new status.
    TRANSITION_FIELDS = {"submitted_at", "approved_at", "approver_id", "approval_notes", "assigned_approver_id"}
    DRAFT_FIELDS = ("type", "total_amount", "currency", "description", "business_purpose", "expense_data")

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def next_expense_number(self) -> str:
        cursor = self.conn.execute("INSERT INTO expense_sequence DEFAULT VALUES")
        return f"EXP-{int(cursor.lastrowid):06d}"

    def insert(self, record: ExpenseRecord) -> ExpenseRecord:
        now = utc_now()
        stored = replace(
            record,
            id=record.id or str(uuid4()),
            expense_number=record.expense_number or self.next_expense_number(),
            created_at=record.created_at or now,
            updated_at=now,
        )
        self.conn.execute(
            """
            INSERT INTO expenses(
                id, expense_number, user_id, type, status, total_amount, currency,
                description, business_purpose, expense_data, assigned_approver_id,
                approver_id, approval_notes, submitted_at, approved_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.expense_number,
                stored.user_id,
                stored.type,
                stored.status,
                _normalize_value(stored.total_amount),
                stored.currency,
                stored.description,
                stored.business_purpose,
                json.dumps(stored.expense_data),
                stored.assigned_approver_id,
                stored.approver_id,
                stored.approval_notes,
                _normalize_value(stored.submitted_at),
                _normalize_value(stored.approved_at),
                _normalize_value(stored.created_at),
                _normalize_value(stored.updated_at),
            ),
        )
        return stored

    def get(self, expense_id: str) -> Optional[ExpenseRecord]:
        row = self.conn.execute("SELECT * FROM expenses WHERE id = ?", (expense_id,)).fetchone()
        return _expense_from_row(row) if row else None

    def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        expense_type: Optional[str] = None,
    ) -> list[ExpenseRecord]:
        return self._select({"user_id": user_id, "status": status, "type": expense_type})

    def list_all(self, status: Optional[str] = None, expense_type: Optional[str] = None) -> list[ExpenseRecord]:
        return self._select({"status": status, "type": expense_type})

    def list_pending(self, approver_id: Optional[str] = None) -> list[ExpenseRecord]:
        """Submitted expenses assigned to ``approver_id``, or every one when omitted."""
        return self._select({"status": "submitted", "assigned_approver_id": approver_id})

    def update_draft(self, expense_id: str, record: ExpenseRecord) -> bool:
        assignments = ", ".join(f"{field} = ?" for field in self.DRAFT_FIELDS)
        values = [
            record.type,
            _normalize_value(record.total_amount),
            record.currency,
            record.description,
            record.business_purpose,
            json.dumps(record.expense_data),
            _normalize_value(utc_now()),
            expense_id,
        ]
        cursor = self.conn.execute(
            f"UPDATE expenses SET {assignments}, updated_at = ? WHERE id = ? AND status = 'draft'",
            values,
        )
        return cursor.rowcount == 1

    def transition(self, expense_id: str, from_status: str, to_status: str, **fields: Any) -> bool:
        """Move ``expense_id`` to ``to_status`` only if it is still ``from_status``."""
        invalid = set(fields) - self.TRANSITION_FIELDS
        if invalid:
            raise ValueError(f"Invalid transition fields: {sorted(invalid)}")

        assignments = "".join(f", {field} = ?" for field in fields)
        values = [to_status, *(_normalize_value(value) for value in fields.values())]
        values.extend([_normalize_value(utc_now()), expense_id, from_status])
        cursor = self.conn.execute(
            f"UPDATE expenses SET status = ?{assignments}, updated_at = ? WHERE id = ? AND status = ?",
            values,
        )
        return cursor.rowcount == 1

    def delete_draft(self, expense_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM expenses WHERE id = ? AND status = 'draft'", (expense_id,))
        return cursor.rowcount == 1

    def append_approval_note(self, expense_id: str, note: str) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE expenses
            SET approval_notes = CASE
                    WHEN approval_notes IS NULL OR approval_notes = '' THEN ?
                    ELSE approval_notes || char(10) || ?
                END,
                updated_at = ?
            WHERE id = ? AND status IN ('approved', 'rejected')
            """,
            (note, note, _normalize_value(utc_now()), expense_id),
        )
        return cursor.rowcount == 1

    def _select(self, filters: dict[str, Any]) -> list[ExpenseRecord]:
        active = {column: value for column, value in filters.items() if value is not None}
        where = " AND ".join(f"{column} = ?" for column in active) or "1 = 1"
        rows = self.conn.execute(
            f"SELECT * FROM expenses WHERE {where} ORDER BY created_at DESC, expense_number DESC",
            list(active.values()),
        ).fetchall()
        return [_expense_from_row(row) for row in rows]


def _expense_from_row(row: sqlite3.Row) -> ExpenseRecord:
    record = ExpenseRecord(
        id=row["id"],
        expense_number=row["expense_number"],
        user_id=row["user_id"],
        type=row["type"],
        status=row["status"],
        total_amount=Decimal(row["total_amount"]),
        currency=row["currency"],
        description=row["description"],
        business_purpose=row["business_purpose"],
        expense_data=json.loads(row["expense_data"]),
        assigned_approver_id=row["assigned_approver_id"],
        approver_id=row["approver_id"],
        approval_notes=row["approval_notes"],
        submitted_at=_timestamp(row["submitted_at"]),
        approved_at=_timestamp(row["approved_at"]),
        created_at=_timestamp(row["created_at"]),
        updated_at=_timestamp(row["updated_at"]),
    )
    try:
        unpack_payload(record)
    except ValidationFailed as exc:
        raise BackendFailure(f"Stored expense {record.id} has an invalid payload: {exc.message}") from exc
    return record


class ProfileRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, user_id: str) -> Optional[UserProfile]:
        row = self.conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return _profile_from_row(row) if row else None

    def get_by_email(self, email: str) -> Optional[UserProfile]:
        row = self.conn.execute("SELECT * FROM profiles WHERE email = ?", (email,)).fetchone()
        return _profile_from_row(row) if row else None

    def upsert(self, profile: UserProfile) -> None:
        self.conn.execute(
            """
            INSERT INTO profiles(
                id, email, full_name, role, approval_limit, single_transaction_limit,
                manager_id, monthly_budget, is_active
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                full_name = excluded.full_name,
                role = excluded.role,
                approval_limit = excluded.approval_limit,
                single_transaction_limit = excluded.single_transaction_limit,
                manager_id = excluded.manager_id,
                monthly_budget = excluded.monthly_budget,
                is_active = excluded.is_active,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                profile.id,
                profile.email,
                profile.full_name,
                profile.role,
                _normalize_value(profile.approval_limit),
                _normalize_value(profile.single_transaction_limit),
                profile.manager_id,
                _normalize_value(profile.monthly_budget),
                _normalize_value(profile.is_active),
            ),
        )

    def list_by_role(self, role: str) -> list[UserProfile]:
        rows = self.conn.execute(
            "SELECT * FROM profiles WHERE role = ? AND is_active = 1 ORDER BY id",
            (role,),
        ).fetchall()
        return [_profile_from_row(row) for row in rows]


def _profile_from_row(row: sqlite3.Row) -> UserProfile:
    return UserProfile(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        role=row["role"],
        approval_limit=_decimal(row["approval_limit"]),
        single_transaction_limit=_decimal(row["single_transaction_limit"]),
        manager_id=row["manager_id"],
        monthly_budget=_decimal(row["monthly_budget"]),
        is_active=bool(row["is_active"]),
    )


class ApprovalRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, approval: ApprovalRecord) -> ApprovalRecord:
        stored = replace(approval, id=approval.id or str(uuid4()), approved_at=approval.approved_at or utc_now())
        self.conn.execute(
            """
            INSERT INTO expense_approvals(id, expense_id, approver_id, approval_level, action, comments, approved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.expense_id,
                stored.approver_id,
                stored.approval_level,
                stored.action,
                stored.comments,
                _normalize_value(stored.approved_at),
            ),
        )
        return stored

    def list_for_expense(self, expense_id: str) -> list[ApprovalRecord]:
        rows = self.conn.execute(
            "SELECT * FROM expense_approvals WHERE expense_id = ? ORDER BY approved_at",
            (expense_id,),
        ).fetchall()
        return [
            ApprovalRecord(
                id=row["id"],
                expense_id=row["expense_id"],
                approver_id=row["approver_id"],
                approval_level=row["approval_level"],
                action=row["action"],
                comments=row["comments"],
                approved_at=_timestamp(row["approved_at"]),
            )
            for row in rows
        ]


class NotificationRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, notification: Notification) -> Notification:
        stored = replace(
            notification,
            id=notification.id or str(uuid4()),
            created_at=notification.created_at or utc_now(),
        )
        self.conn.execute(
            """
            INSERT INTO notifications(id, user_id, title, content, type, status, metadata, read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.user_id,
                stored.title,
                stored.content,
                stored.type,
                stored.status,
                json.dumps(stored.metadata, default=str),
                _normalize_value(stored.read),
                _normalize_value(stored.created_at),
            ),
        )
        return stored

    def list_for_user(self, user_id: str, unread_only: bool = True) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND read = 0"
        rows = self.conn.execute(query + " ORDER BY created_at DESC", (user_id,)).fetchall()
        return [_notification_from_row(row) for row in rows]

    def set_status(self, notification_id: str, status: str) -> None:
        self.conn.execute("UPDATE notifications SET status = ? WHERE id = ?", (status, notification_id))

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE notifications SET read = 1 WHERE id = ? AND user_id = ?",
            (notification_id, user_id),
        )
        return cursor.rowcount == 1

    def mark_all_read(self, user_id: str) -> int:
        cursor = self.conn.execute("UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0", (user_id,))
        return cursor.rowcount


def _notification_from_row(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        content=row["content"],
        type=row["type"],
        status=row["status"],
        metadata=json.loads(row["metadata"]),
        read=bool(row["read"]),
        created_at=_timestamp(row["created_at"]),
    )


class AttachmentRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, attachment: Attachment) -> Attachment:
        stored = replace(
            attachment,
            id=attachment.id or str(uuid4()),
            uploaded_at=attachment.uploaded_at or utc_now(),
        )
        self.conn.execute(
            """
            INSERT INTO expense_attachments(
                id, expense_id, file_name, file_path, file_type, file_size, description, uploaded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.expense_id,
                stored.file_name,
                stored.file_path,
                stored.file_type,
                stored.file_size,
                stored.description,
                _normalize_value(stored.uploaded_at),
            ),
        )
        return stored

    def list_for_expense(self, expense_id: str) -> list[Attachment]:
        rows = self.conn.execute(
            "SELECT * FROM expense_attachments WHERE expense_id = ? ORDER BY uploaded_at",
            (expense_id,),
        ).fetchall()
        return [
            Attachment(
                id=row["id"],
                expense_id=row["expense_id"],
                file_name=row["file_name"],
                file_path=row["file_path"],
                file_type=row["file_type"],
                file_size=row["file_size"],
                description=row["description"],
                uploaded_at=_timestamp(row["uploaded_at"]),
            )
            for row in rows
        ]


class AuditRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def record(self, entry: AuditLogEntry) -> None:
        self.conn.execute(
            """
            INSERT INTO audit_log(user_id, action, table_name, record_id, old_values, new_values, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.action,
                entry.table_name,
                entry.record_id,
                _json(entry.old_values),
                _json(entry.new_values),
                _normalize_value(entry.created_at or utc_now()),
            ),
        )

    def list_for_record(self, table_name: str, record_id: str) -> list[AuditLogEntry]:
        rows = self.conn.execute(
            "SELECT * FROM audit_log WHERE table_name = ? AND record_id = ? ORDER BY id",
            (table_name, record_id),
        ).fetchall()
        return [
            AuditLogEntry(
                user_id=row["user_id"],
                action=row["action"],
                table_name=row["table_name"],
                record_id=row["record_id"],
                old_values=json.loads(row["old_values"]) if row["old_values"] else None,
                new_values=json.loads(row["new_values"]) if row["new_values"] else None,
                created_at=_timestamp(row["created_at"]),
            )
            for row in rows
        ]


class SessionRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, token: str, user_id: str, email: str, expires_at: datetime) -> None:
        self.conn.execute(
            "INSERT INTO sessions(token, user_id, email, expires_at) VALUES (?, ?, ?, ?)",
            (token, user_id, email, _normalize_value(expires_at)),
        )

    def get(self, token: str) -> Optional[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()

    def delete(self, token: str) -> bool:
        cursor = self.conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
        return cursor.rowcount == 1

    def delete_expired(self, now: datetime) -> int:
        cursor = self.conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (_normalize_value(now),))
        return cursor.rowcount
