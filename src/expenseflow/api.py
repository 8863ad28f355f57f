from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from dataclasses import asdict
from typing import Any, Iterator, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import Settings, load_settings
from .conversion import jsonable_form, record_to_form
from .db import connect_sqlite, migrate
from .errors import ExpenseFlowError, Unauthorized
from .export import XLSX_MEDIA_TYPE
from .identity import Identity, IdentityProvider, SessionIdentityProvider
from .logging_config import LogContext, configure_logging
from .models import ExpenseRecord
from .notifications import EmailSender, NotificationService, email_sender_from_settings
from .services import ExpenseSubmissionService
from .storage import LocalObjectStorage
from .validation import SubmissionChecklist

logger = logging.getLogger(__name__)

SESSION_COOKIE = "expenseflow_session"
INTERNAL_ERROR = {"error": "Internal server error"}


class ExpensePayload(BaseModel):
    expense: dict[str, Any]


class Confirmations(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    accuracy: bool = False
    receipts_attached: bool = Field(default=False, alias="receiptsAttached")
    legitimacy: bool = False


class SubmitPayload(BaseModel):
    confirmations: Optional[Confirmations] = None


class ApprovalPayload(BaseModel):
    action: Optional[str] = None
    notes: Optional[str] = None


class NotePayload(BaseModel):
    note: str


class SendNotificationPayload(BaseModel):
    to: str
    subject: str
    html: str
    notification: dict[str, Any] = Field(default_factory=dict)


def create_app(
    settings: Optional[Settings] = None,
    identity_provider: Optional[IdentityProvider] = None,
    email_sender: Optional[EmailSender] = None,
    storage: Optional[LocalObjectStorage] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_json)
    provider = identity_provider or SessionIdentityProvider(settings.database_path, settings.session_ttl_seconds)
    sender = email_sender or email_sender_from_settings(settings)
    storage = storage or LocalObjectStorage.from_settings(settings)

    with closing(connect_sqlite(settings.database_path)) as conn:
        migrate(conn)

    app = FastAPI(title="ExpenseFlow API")
    app.state.settings = settings
    app.state.identity_provider = provider

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        with LogContext.bind(request_id=request.headers.get("x-request-id") or uuid4().hex):
            return await call_next(request)

    _install_error_handlers(app)

    def get_conn() -> Iterator[sqlite3.Connection]:
        conn = connect_sqlite(settings.database_path, check_same_thread=False)
        try:
            yield conn
        finally:
            conn.close()

    def get_identity(request: Request) -> Optional[Identity]:
        token = _bearer_token(request.headers.get("authorization")) or request.cookies.get(SESSION_COOKIE)
        return provider.get_identity(token)

    def get_notifications(conn: sqlite3.Connection = Depends(get_conn)) -> NotificationService:
        return NotificationService(conn, sender, settings.app_url)

    def get_service(
        conn: sqlite3.Connection = Depends(get_conn),
        notifier: NotificationService = Depends(get_notifications),
    ) -> ExpenseSubmissionService:
        return ExpenseSubmissionService(conn, notifier=notifier, storage=storage)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/expenses")
    def list_expenses(
        status: Optional[str] = None,
        expense_type: Optional[str] = Query(default=None, alias="type"),
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        expenses = service.list_expenses(identity, status=status, expense_type=expense_type)
        return {"expenses": [expense_json(expense) for expense in expenses]}

    @app.post("/api/expenses")
    def create_expense(
        payload: ExpensePayload,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        expense = service.create_draft(identity, payload.expense)
        return {"expense": expense_json(expense), "message": "Expense created successfully"}

    @app.get("/api/expenses/export.xlsx")
    def export_expenses(
        month: Optional[str] = None,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        content = service.export_expenses(identity, month)
        filename = f"expenses-{month}.xlsx" if month else "expenses.xlsx"
        return Response(
            content,
            media_type=XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/expenses/{expense_id}")
    def get_expense(
        expense_id: str,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        return {"expense": expense_json(service.get_expense(identity, expense_id))}

    @app.put("/api/expenses/{expense_id}")
    def update_expense(
        expense_id: str,
        payload: ExpensePayload,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        expense = service.update_draft(identity, expense_id, payload.expense)
        return {"expense": expense_json(expense), "message": "Expense updated successfully"}

    @app.delete("/api/expenses/{expense_id}")
    def delete_expense(
        expense_id: str,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        service.delete_draft(identity, expense_id)
        return {"success": True}

    @app.post("/api/expenses/{expense_id}/submit")
    def submit_expense(
        expense_id: str,
        payload: Optional[SubmitPayload] = None,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        checklist = None
        if payload is not None and payload.confirmations is not None:
            checklist = SubmissionChecklist(
                accuracy=payload.confirmations.accuracy,
                receipts_attached=payload.confirmations.receipts_attached,
                legitimacy=payload.confirmations.legitimacy,
            )
        expense = service.submit(identity, expense_id, checklist)
        message = (
            "Expense submitted and approved automatically"
            if expense.status == "approved"
            else "Expense submitted successfully"
        )
        return {"message": message, "expense": expense_json(expense)}

    @app.post("/api/expenses/{expense_id}/approve")
    def approve_expense(
        expense_id: str,
        payload: ApprovalPayload,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        expense = service.decide(identity, expense_id, payload.action or "", payload.notes)
        return {"message": f"Expense {expense.status} successfully", "status": expense.status}

    @app.get("/api/expenses/{expense_id}/approvals")
    def approval_history(
        expense_id: str,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        return {"approvals": [camel_json(approval) for approval in service.approval_history(identity, expense_id)]}

    @app.post("/api/expenses/{expense_id}/notes")
    def add_note(
        expense_id: str,
        payload: NotePayload,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        return {"expense": expense_json(service.add_approval_note(identity, expense_id, payload.note))}

    @app.post("/api/expenses/{expense_id}/attachments")
    async def upload_attachments(
        expense_id: str,
        files: list[UploadFile] = File(...),
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        uploaded = []
        for file in files:
            content = await file.read()
            attachment = service.add_attachment(
                identity,
                expense_id,
                file.filename or "upload.bin",
                file.content_type,
                content,
            )
            uploaded.append(camel_json(attachment))
        return {"expenseId": expense_id, "attachments": uploaded}

    @app.get("/api/expenses/{expense_id}/attachments")
    def list_attachments(
        expense_id: str,
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        attachments = service.list_attachments(identity, expense_id)
        return {"attachments": [camel_json(attachment) for attachment in attachments]}

    @app.get("/api/approvals/pending")
    def pending_approvals(
        identity: Optional[Identity] = Depends(get_identity),
        service: ExpenseSubmissionService = Depends(get_service),
    ):
        return {"expenses": [expense_json(expense) for expense in service.pending_approvals(identity)]}

    @app.post("/api/notifications/send")
    def send_notification(
        payload: SendNotificationPayload,
        identity: Optional[Identity] = Depends(get_identity),
        notifications: NotificationService = Depends(get_notifications),
    ):
        _require_identity(identity)
        notifications.send(payload.to, payload.subject, payload.html, payload.notification)
        return {"success": True}

    @app.get("/api/notifications")
    def unread_notifications(
        identity: Optional[Identity] = Depends(get_identity),
        notifications: NotificationService = Depends(get_notifications),
    ):
        identity = _require_identity(identity)
        return {"notifications": [camel_json(item) for item in notifications.unread(identity.user_id)]}

    @app.post("/api/notifications/read-all")
    def mark_all_notifications_read(
        identity: Optional[Identity] = Depends(get_identity),
        notifications: NotificationService = Depends(get_notifications),
    ):
        identity = _require_identity(identity)
        return {"updated": notifications.mark_all_read(identity.user_id)}

    @app.post("/api/notifications/{notification_id}/read")
    def mark_notification_read(
        notification_id: str,
        identity: Optional[Identity] = Depends(get_identity),
        notifications: NotificationService = Depends(get_notifications),
    ):
        identity = _require_identity(identity)
        notifications.mark_read(notification_id, identity.user_id)
        return {"success": True}

    return app


def expense_json(record: ExpenseRecord) -> dict[str, Any]:
    form = record_to_form(record)
    server_fields = {
        "expenseNumber": record.expense_number,
        "assignedApproverId": record.assigned_approver_id,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }
    form.update({key: value for key, value in server_fields.items() if value is not None})
    return jsonable_form(form)


def camel_json(item: Any) -> dict[str, Any]:
    return jsonable_form({to_camel(key): value for key, value in asdict(item).items()})


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _require_identity(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise Unauthorized()
    return identity


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ExpenseFlowError)
    async def handle_expenseflow_error(request: Request, exc: ExpenseFlowError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Backend failure",
                exc_info=exc,
                extra={"path": request.url.path, "code": exc.code},
            )
            return JSONResponse(INTERNAL_ERROR, status_code=500)
        logger.info(
            "Request rejected",
            extra={"path": request.url.path, "code": exc.code, "status": exc.status_code},
        )
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = {}
        for issue in exc.errors():
            path = ".".join(str(part) for part in issue["loc"][1:]) or "body"
            details.setdefault(path, issue["msg"])
        return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)

    @app.exception_handler(sqlite3.Error)
    async def handle_database_error(request: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.error("Database error", exc_info=exc, extra={"path": request.url.path})
        return JSONResponse(INTERNAL_ERROR, status_code=500)
