"""Packing between the wizard form shape and the persistence record.

Forms are flat camelCase mappings. Records keep the shared columns on
``ExpenseRecord`` and pack every variant field into ``expense_data`` under
snake_case keys, tagged with the expense type. The blob is checked against the
payload model of its type whenever it is packed or unpacked, so a stored blob
is never trusted as pre-validated.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import UnknownExpenseType, ValidationFailed
from .models import DEFAULT_CURRENCY, ExpenseRecord
from .validation import format_validation_errors


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CoordinatesPayload(_Payload):
    lat: float
    lng: float


class LocationPayload(_Payload):
    address: Optional[str] = None
    coordinates: Optional[CoordinatesPayload] = None


class VehicleDetailsPayload(_Payload):
    model: Optional[str] = None
    license_plate: Optional[str] = None
    fuel_type: Optional[str] = None
    odometer_start: Optional[Decimal] = None
    odometer_end: Optional[Decimal] = None


class TravelPayload(_Payload):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_location: Optional[LocationPayload] = None
    end_location: Optional[LocationPayload] = None
    transportation_type: Optional[str] = None
    vehicle_ownership: Optional[str] = None
    round_trip: Optional[bool] = None
    mileage: Optional[Decimal] = None
    fuel_cost: Optional[Decimal] = None
    toll_charges: Optional[Decimal] = None
    accommodation_cost: Optional[Decimal] = None
    per_diem_rate: Optional[Decimal] = None
    vehicle_details: Optional[VehicleDetailsPayload] = None


class MaintenancePayload(_Payload):
    service_date: Optional[date] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    vehicle_type: Optional[str] = None
    vehicle_id: Optional[str] = None
    equipment_purchased: Optional[str] = None
    vendor_name: Optional[str] = None
    invoice_number: Optional[str] = None
    warranty_applicable: Optional[bool] = None
    asset_id: Optional[str] = None


class RequisitionPayload(_Payload):
    service_type: Optional[str] = None
    sub_type: Optional[str] = None
    duration: Optional[str] = None
    frequency: Optional[str] = None
    required_by: Optional[date] = None
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    urgency_level: Optional[str] = None
    preferred_vendor: Optional[str] = None


PAYLOADS: dict[str, type[_Payload]] = {
    "travel": TravelPayload,
    "maintenance": MaintenancePayload,
    "requisition": RequisitionPayload,
}

# Base form keys that map one-to-one onto optional record columns.
_OPTIONAL_COLUMNS = {
    "id": "id",
    "submittedAt": "submitted_at",
    "approvedAt": "approved_at",
    "approverId": "approver_id",
    "approvalNotes": "approval_notes",
}


def form_to_record(form: Mapping[str, Any], user_id: Optional[str] = None) -> ExpenseRecord:
    expense_type = form.get("type")
    model = _payload_model(expense_type)
    try:
        payload = model.model_validate(dict(form))
    except ValidationError as exc:
        raise ValidationFailed("Invalid expense data", format_validation_errors(exc)) from exc
    expense_data = {"type": expense_type}
    expense_data.update(payload.model_dump(mode="json", exclude_none=True))

    columns = {column: form.get(key) for key, column in _OPTIONAL_COLUMNS.items() if form.get(key) is not None}
    return ExpenseRecord(
        user_id=user_id if user_id is not None else (form.get("userId") or ""),
        type=expense_type,
        total_amount=to_decimal(form.get("totalAmount", 0), field="totalAmount"),
        description=form.get("description") or "",
        business_purpose=form.get("businessPurpose") or "",
        currency=form.get("currency") or DEFAULT_CURRENCY,
        status=form.get("status") or "draft",
        expense_data=expense_data,
        **columns,
    )


def record_to_form(record: ExpenseRecord) -> dict[str, Any]:
    payload = unpack_payload(record)
    form: dict[str, Any] = {
        "type": record.type,
        "userId": record.user_id,
        "status": record.status,
        "totalAmount": record.total_amount,
        "currency": record.currency,
        "description": record.description,
        "businessPurpose": record.business_purpose,
    }
    for key, column in _OPTIONAL_COLUMNS.items():
        value = getattr(record, column)
        if value is not None:
            form[key] = value
    form.update(payload.model_dump(by_alias=True, exclude_none=True))
    return form


def unpack_payload(record: ExpenseRecord) -> _Payload:
    blob = record.expense_data
    if not isinstance(blob, Mapping):
        raise ValidationFailed("Expense payload must be an object", {"expenseData": "Invalid payload"})
    tag = blob.get("type")
    if tag != record.type:
        raise ValidationFailed(
            f"Expense payload type '{tag}' does not match expense type '{record.type}'",
            {"expenseData.type": "Payload type does not match expense type"},
        )
    model = _payload_model(record.type)
    try:
        return model.model_validate(dict(blob))
    except ValidationError as exc:
        raise ValidationFailed("Stored expense payload is invalid", _prefixed(exc)) from exc


def jsonable_form(form: Mapping[str, Any]) -> dict[str, Any]:
    """Render dates and decimals as strings so the form can travel as JSON."""
    return {key: _jsonable(value) for key, value in form.items()}


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationFailed(f"{field} must be a number", {field: "Must be a number"})
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationFailed(f"{field} must be a number", {field: "Must be a number"}) from exc


def _payload_model(expense_type: Any) -> type[_Payload]:
    model = PAYLOADS.get(expense_type) if isinstance(expense_type, str) else None
    if model is None:
        raise UnknownExpenseType(expense_type)
    return model


def _prefixed(exc: ValidationError) -> dict[str, str]:
    return {f"expenseData.{path}": message for path, message in format_validation_errors(exc).items()}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
