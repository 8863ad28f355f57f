from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

ExpenseType = Literal["travel", "maintenance", "requisition"]
ExpenseStatus = Literal["draft", "submitted", "approved", "rejected"]
ApprovalAction = Literal["approved", "rejected"]
Role = Literal["employee", "finance", "manager", "admin"]

EXPENSE_TYPES: tuple[str, ...] = ("travel", "maintenance", "requisition")
EXPENSE_STATUSES: tuple[str, ...] = ("draft", "submitted", "approved", "rejected")
TERMINAL_STATUSES = frozenset({"approved", "rejected"})
DEFAULT_CURRENCY = "BDT"


@dataclass(frozen=True)
class ExpenseRecord:
    """Normalized persistence shape of an expense.

    Variant-specific fields live in ``expense_data``, a self-describing blob
    whose ``type`` key repeats the envelope ``type``.
    """

    user_id: str
    type: str
    total_amount: Decimal
    description: str = ""
    business_purpose: str = ""
    currency: str = DEFAULT_CURRENCY
    status: str = "draft"
    expense_data: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    expense_number: Optional[str] = None
    assigned_approver_id: Optional[str] = None
    approver_id: Optional[str] = None
    approval_notes: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    full_name: str = ""
    role: str = "employee"
    approval_limit: Optional[Decimal] = None
    single_transaction_limit: Optional[Decimal] = None
    manager_id: Optional[str] = None
    monthly_budget: Optional[Decimal] = None
    is_active: bool = True


@dataclass(frozen=True)
class ApprovalRecord:
    expense_id: str
    approver_id: str
    action: str
    approval_level: int = 1
    comments: Optional[str] = None
    approved_at: Optional[datetime] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    user_id: str
    title: str
    content: str
    type: str
    status: str = "pending"
    metadata: dict[str, Any] = field(default_factory=dict)
    read: bool = False
    created_at: Optional[datetime] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class Attachment:
    expense_id: str
    file_name: str
    file_path: str
    file_type: str
    file_size: int
    description: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class AuditLogEntry:
    user_id: Optional[str]
    action: str
    table_name: str
    record_id: str
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
