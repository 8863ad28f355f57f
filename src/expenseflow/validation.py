"""Schema-per-variant validation for expense drafts.

Every variant schema extends ``BaseExpenseSchema`` and is addressed by the
camelCase field names the forms use. Results map dotted field paths
(``startLocation.address``) to human-readable messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from .errors import UnknownExpenseType
from .models import DEFAULT_CURRENCY, ExpenseStatus, ExpenseType

MAX_AMOUNT = Decimal("1000000")
DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 1000
BUSINESS_PURPOSE_MIN_LENGTH = 200
BUSINESS_PURPOSE_MAX_LENGTH = 2000

TransportationType = Literal[
    "van", "rickshaw", "boat", "cng", "train", "plane", "launch", "ferry", "bike", "car"
]
VehicleOwnership = Literal["own", "rental", "public"]
MaintenanceCategory = Literal["charges", "purchases", "repairs"]
UrgencyLevel = Literal["low", "medium", "high", "urgent"]

MAINTENANCE_SUBCATEGORIES: dict[str, tuple[str, ...]] = {
    "charges": (
        "garage-charge",
        "vehicle-charging",
        "fuel",
        "oil",
        "lubricants",
        "other-charges",
    ),
    "purchases": (
        "drinking-water",
        "electric-equipment",
        "sanitary-equipment",
        "medical-equipment",
        "document-courier",
        "office-bag",
        "spare-parts",
        "tools",
        "equipment",
        "accessories",
    ),
    "repairs": (
        "plumber",
        "electrician",
        "bike-fix",
        "wash-service",
        "engine",
        "transmission",
        "brakes",
        "electrical",
        "body",
        "other-repairs",
    ),
}

_MESSAGES: dict[tuple[str, str], str] = {
    ("totalAmount", "greater_than"): "Amount must be greater than 0",
    ("totalAmount", "less_than_equal"): "Amount exceeds maximum limit",
    ("totalAmount", "decimal_parsing"): "Amount must be a number",
    ("description", "string_too_short"): (
        f"Description must be at least {DESCRIPTION_MIN_LENGTH} characters"
    ),
    ("description", "string_too_long"): (
        f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters"
    ),
    ("businessPurpose", "string_too_short"): (
        f"Business purpose must be at least {BUSINESS_PURPOSE_MIN_LENGTH} characters"
    ),
    ("businessPurpose", "string_too_long"): (
        f"Business purpose cannot exceed {BUSINESS_PURPOSE_MAX_LENGTH} characters"
    ),
    ("currency", "string_too_short"): "Currency is required",
    ("address", "string_too_short"): "Address is required",
    ("subCategory", "string_too_short"): "Sub-category is required",
    ("serviceType", "string_too_short"): "Service type is required",
    ("subType", "string_too_short"): "Sub-type is required",
    ("duration", "string_too_short"): "Duration is required",
    ("frequency", "string_too_short"): "Frequency is required",
    ("quantity", "greater_than"): "Quantity must be greater than 0",
    ("unitPrice", "greater_than"): "Unit price must be greater than 0",
    ("type", "literal_error"): "Unknown expense type",
}


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Coordinates(_Schema):
    lat: float
    lng: float


class Location(_Schema):
    address: str = Field(min_length=1)
    coordinates: Optional[Coordinates] = None


class VehicleDetails(_Schema):
    model: Optional[str] = None
    license_plate: Optional[str] = None
    fuel_type: Optional[str] = None
    odometer_start: Optional[Decimal] = None
    odometer_end: Optional[Decimal] = None


class BaseExpenseSchema(_Schema):
    type: ExpenseType
    description: str = Field(min_length=DESCRIPTION_MIN_LENGTH, max_length=DESCRIPTION_MAX_LENGTH)
    total_amount: Decimal = Field(gt=0, le=MAX_AMOUNT)
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=1)
    business_purpose: Optional[str] = Field(default=None, max_length=BUSINESS_PURPOSE_MAX_LENGTH)
    status: Optional[ExpenseStatus] = None


class TravelExpenseSchema(BaseExpenseSchema):
    type: Literal["travel"]
    start_date: date
    end_date: date
    start_location: Location
    end_location: Location
    transportation_type: TransportationType
    vehicle_ownership: VehicleOwnership
    round_trip: bool
    mileage: Optional[Decimal] = Field(default=None, ge=0)
    fuel_cost: Optional[Decimal] = Field(default=None, ge=0)
    toll_charges: Optional[Decimal] = Field(default=None, ge=0)
    accommodation_cost: Optional[Decimal] = Field(default=None, ge=0)
    per_diem_rate: Optional[Decimal] = Field(default=None, ge=0)
    vehicle_details: Optional[VehicleDetails] = None

    @field_validator("end_date")
    @classmethod
    def _end_not_before_start(cls, value: date, info: ValidationInfo) -> date:
        start = info.data.get("start_date")
        if start is not None and value < start:
            raise ValueError("End date must be on or after start date")
        return value


class MaintenanceExpenseSchema(BaseExpenseSchema):
    type: Literal["maintenance"]
    service_date: date
    category: MaintenanceCategory
    sub_category: str = Field(min_length=1)
    vehicle_type: Optional[str] = None
    vehicle_id: Optional[str] = None
    equipment_purchased: Optional[str] = None
    vendor_name: Optional[str] = None
    invoice_number: Optional[str] = None
    warranty_applicable: Optional[bool] = None
    asset_id: Optional[str] = None

    @field_validator("sub_category")
    @classmethod
    def _sub_category_belongs_to_category(cls, value: str, info: ValidationInfo) -> str:
        category = info.data.get("category")
        if category is not None and value not in MAINTENANCE_SUBCATEGORIES[category]:
            raise ValueError(f"Sub-category '{value}' is not valid for {category}")
        return value


class RequisitionExpenseSchema(BaseExpenseSchema):
    type: Literal["requisition"]
    service_type: str = Field(min_length=1)
    sub_type: str = Field(min_length=1)
    duration: str = Field(min_length=1)
    frequency: str = Field(min_length=1)
    required_by: date
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    unit_price: Optional[Decimal] = Field(default=None, gt=0)
    preferred_vendor: Optional[str] = None
    urgency_level: UrgencyLevel


class DraftMinimumsSchema(BaseExpenseSchema):
    """Server-side floor for creating or submitting a draft of any type."""

    business_purpose: str = Field(
        min_length=BUSINESS_PURPOSE_MIN_LENGTH, max_length=BUSINESS_PURPOSE_MAX_LENGTH
    )


SCHEMAS: dict[str, type[BaseExpenseSchema]] = {
    "travel": TravelExpenseSchema,
    "maintenance": MaintenanceExpenseSchema,
    "requisition": RequisitionExpenseSchema,
}


@dataclass
class ValidationResult:
    valid: bool
    errors: dict[str, str]
    data: Optional[BaseExpenseSchema] = None


@dataclass(frozen=True)
class SubmissionChecklist:
    """The three confirmations the review step asks for before submission."""

    accuracy: bool = False
    receipts_attached: bool = False
    legitimacy: bool = False

    def missing(self) -> list[str]:
        return [name for name in ("accuracy", "receipts_attached", "legitimacy") if not getattr(self, name)]


def validate_expense(expense: Mapping[str, Any], expense_type: Optional[str] = None) -> ValidationResult:
    """Validate a (possibly partial) expense against the schema of its type.

    Raises ``UnknownExpenseType`` when the type has no schema.
    """
    if expense_type is None:
        expense_type = expense.get("type")
    schema = SCHEMAS.get(expense_type) if isinstance(expense_type, str) else None
    if schema is None:
        raise UnknownExpenseType(expense_type)

    candidate = dict(expense)
    candidate["type"] = expense_type
    try:
        data = schema.model_validate(candidate)
    except ValidationError as exc:
        return ValidationResult(valid=False, errors=format_validation_errors(exc))
    return ValidationResult(valid=True, errors={}, data=data)


def check_draft_minimums(expense: Mapping[str, Any]) -> dict[str, str]:
    try:
        DraftMinimumsSchema.model_validate(dict(expense))
    except ValidationError as exc:
        return format_validation_errors(exc)
    return {}


def check_draft_consistency(expense: Mapping[str, Any]) -> dict[str, str]:
    """Cross-field rules of the variant schema that hold for incomplete drafts too.

    Missing fields are ignored; only refinements such as an end date before the
    start date or a sub-category outside its category are reported.
    """
    expense_type = expense.get("type")
    schema = SCHEMAS.get(expense_type) if isinstance(expense_type, str) else None
    if schema is None:
        return {}
    try:
        schema.model_validate(dict(expense))
    except ValidationError as exc:
        return format_validation_errors(exc, kinds=("value_error",))
    return {}


def check_submission_readiness(
    expense: Mapping[str, Any],
    checklist: Optional[SubmissionChecklist] = None,
) -> dict[str, str]:
    errors: dict[str, str] = {}
    purpose = expense.get("businessPurpose") or ""
    if len(purpose) < BUSINESS_PURPOSE_MIN_LENGTH:
        errors["businessPurpose"] = _MESSAGES[("businessPurpose", "string_too_short")]
    if checklist is not None:
        for name in checklist.missing():
            errors[f"confirmations.{to_camel(name)}"] = "Confirmation is required"
    return errors


def format_validation_errors(exc: ValidationError, kinds: Optional[tuple[str, ...]] = None) -> dict[str, str]:
    errors: dict[str, str] = {}
    for issue in exc.errors():
        if kinds is not None and issue["type"] not in kinds:
            continue
        path = ".".join(str(part) for part in issue["loc"])
        if path in errors:
            continue
        errors[path] = _message_for(issue)
    return errors


def _message_for(issue: Mapping[str, Any]) -> str:
    kind = issue["type"]
    leaf = str(issue["loc"][-1]) if issue["loc"] else ""
    if kind == "value_error":
        return str(issue["ctx"]["error"])
    if kind == "missing":
        return "This field is required"
    return _MESSAGES.get((leaf, kind), issue["msg"])
