"""In-app notifications with best-effort email delivery.

A notification row is always written first. Email goes out afterwards and a
delivery failure only flips the row's ``status`` to ``failed``.
"""

from __future__ import annotations

import logging
import smtplib
import sqlite3
from dataclasses import replace
from email.message import EmailMessage
from typing import Any, Mapping, Optional, Protocol

from .config import Settings
from .errors import NotFound
from .models import ExpenseRecord, Notification, UserProfile
from .repositories import NotificationRepository, ProfileRepository
from .ui import render_notification_email

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    enabled: bool

    def send(self, to: str, subject: str, html: str) -> None:
        ...


class SmtpEmailSender:
    enabled = True

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: str = "noreply@expenseflow.org",
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)


class NullEmailSender:
    """Used when no SMTP host is configured."""

    enabled = False

    def send(self, to: str, subject: str, html: str) -> None:
        logger.debug("Email delivery disabled; not sending", extra={"to": to, "subject": subject})


def email_sender_from_settings(settings: Settings) -> EmailSender:
    if not settings.smtp_host:
        return NullEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        sender=settings.email_from,
        timeout=settings.request_timeout_seconds,
    )


class NotificationService:
    def __init__(self, conn: sqlite3.Connection, sender: EmailSender, app_url: str = "http://localhost:8000"):
        self.conn = conn
        self.sender = sender
        self.app_url = app_url.rstrip("/")
        self.notifications = NotificationRepository(conn)
        self.profiles = ProfileRepository(conn)

    def send(self, to: str, subject: str, html: str, notification: Mapping[str, Any]) -> Notification:
        """Store a notification for ``to`` (user id or email), then try to email it.

        Persistence errors propagate; email errors are logged and recorded on the row.
        """
        recipient = self.profiles.get(to) or self.profiles.get_by_email(to)
        with self.conn:
            stored = self.notifications.insert(
                Notification(
                    user_id=recipient.id if recipient else to,
                    title=subject,
                    content=html,
                    type=str(notification.get("type") or "general"),
                    metadata=dict(notification),
                )
            )
        address = recipient.email if recipient else to
        return self._deliver(stored, address)

    def notify_expense_submitted(
        self,
        expense: ExpenseRecord,
        submitter: Optional[UserProfile],
        approver: UserProfile,
    ) -> Optional[Notification]:
        name = submitter.full_name if submitter and submitter.full_name else expense.user_id
        message = (
            f"{name} has submitted a {expense.type} expense for "
            f"{expense.currency} {expense.total_amount} for your approval."
        )
        return self._notify(
            approver,
            "expense_submitted",
            "New Expense Submission",
            message,
            f"{self.app_url}/approvals/{expense.id}",
            expense,
            action="review",
        )

    def notify_expense_status(
        self,
        expense: ExpenseRecord,
        owner: Optional[UserProfile],
        approver: UserProfile,
        status: str,
        comment: Optional[str] = None,
    ) -> Optional[Notification]:
        if owner is None:
            logger.warning("Expense owner has no profile; skipping notification", extra={"expense_id": expense.id})
            return None
        approver_name = approver.full_name or approver.email
        message = (
            f"Your {expense.type} expense for {expense.currency} {expense.total_amount} "
            f"has been {status} by {approver_name}" + (f": {comment}" if comment else ".")
        )
        return self._notify(
            owner,
            f"expense_{status}",
            f"Expense {status.capitalize()}",
            message,
            f"{self.app_url}/expenses/{expense.id}",
            expense,
        )

    def unread(self, user_id: str) -> list[Notification]:
        return self.notifications.list_for_user(user_id, unread_only=True)

    def mark_read(self, notification_id: str, user_id: str) -> None:
        with self.conn:
            found = self.notifications.mark_read(notification_id, user_id)
        if not found:
            raise NotFound("Notification not found")

    def mark_all_read(self, user_id: str) -> int:
        with self.conn:
            return self.notifications.mark_all_read(user_id)

    def _notify(
        self,
        recipient: UserProfile,
        kind: str,
        title: str,
        message: str,
        link: str,
        expense: ExpenseRecord,
        action: str = "view",
    ) -> Optional[Notification]:
        try:
            with self.conn:
                stored = self.notifications.insert(
                    Notification(
                        user_id=recipient.id,
                        title=title,
                        content=message,
                        type=kind,
                        metadata={"expense_id": expense.id, "link": link},
                    )
                )
            html = render_notification_email(title, message, link, action=action)
            return self._deliver(stored, recipient.email, html=html)
        except Exception:
            logger.exception(
                "Failed to notify user",
                extra={"recipient_id": recipient.id, "expense_id": expense.id, "kind": kind},
            )
            return None

    def _deliver(self, stored: Notification, address: str, html: Optional[str] = None) -> Notification:
        if not self.sender.enabled:
            return stored
        status = "sent"
        try:
            self.sender.send(address, stored.title, html if html is not None else stored.content)
        except Exception as exc:
            status = "failed"
            logger.error(
                "Error sending email",
                extra={"notification_id": stored.id, "error": str(exc)},
            )
        with self.conn:
            self.notifications.set_status(stored.id, status)
        return replace(stored, status=status)
