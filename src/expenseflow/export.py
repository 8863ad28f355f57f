from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from io import BytesIO
from typing import Iterable, Optional

from openpyxl import Workbook
from openpyxl.styles import Border, Font, Side
from openpyxl.worksheet.worksheet import Worksheet

from .errors import ValidationFailed
from .models import ExpenseRecord

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

COLUMNS = (
    "Expense Number",
    "Type",
    "Status",
    "Description",
    "Amount",
    "Currency",
    "Submitted At",
    "Approved At",
    "Created At",
)


def parse_month(value: Optional[str]) -> Optional[tuple[int, int]]:
    """Parse ``YYYY-MM``; ``None`` means no month filter."""
    if not value:
        return None
    try:
        year_text, month_text = value.split("-")
        year, month = int(year_text), int(month_text)
        date(year, month, 1)
    except ValueError:
        raise ValidationFailed("Month must be formatted as YYYY-MM", {"month": "Invalid month"}) from None
    return year, month


@dataclass
class ExpenseExportService:
    """Monthly expense summary workbook: one row per expense plus totals per currency."""

    sheet_title: str = "Expenses"

    def build_workbook(self, expenses: Iterable[ExpenseRecord], month: Optional[str] = None) -> Workbook:
        period = parse_month(month)
        selected = [expense for expense in expenses if _in_period(expense, period)]

        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = self.sheet_title
        worksheet.append([f"Expense summary {month}" if month else "Expense summary"])
        worksheet["A1"].font = Font(bold=True, size=14)
        worksheet.append([])
        worksheet.append(list(COLUMNS))
        thin = Side(border_style="thin", color="000000")
        for cell in worksheet[3]:
            cell.font = Font(bold=True)
            cell.border = Border(top=thin, left=thin, right=thin, bottom=thin)
        for expense in selected:
            worksheet.append(_row(expense))
        self._append_totals(worksheet, selected)
        return workbook

    def render(self, expenses: Iterable[ExpenseRecord], month: Optional[str] = None) -> bytes:
        buffer = BytesIO()
        self.build_workbook(expenses, month).save(buffer)
        return buffer.getvalue()

    @staticmethod
    def _append_totals(sheet: Worksheet, expenses: list[ExpenseRecord]) -> None:
        totals: dict[str, Decimal] = {}
        for expense in expenses:
            totals[expense.currency] = totals.get(expense.currency, Decimal("0")) + expense.total_amount
        sheet.append([])
        sheet.append(["Expense count", len(expenses)])
        for currency in sorted(totals):
            sheet.append([f"Total {currency}", float(totals[currency])])


def _in_period(expense: ExpenseRecord, period: Optional[tuple[int, int]]) -> bool:
    if period is None:
        return True
    created = expense.created_at
    return created is not None and (created.year, created.month) == period


def _row(expense: ExpenseRecord) -> list[object]:
    return [
        expense.expense_number,
        expense.type,
        expense.status,
        expense.description,
        float(expense.total_amount),
        expense.currency,
        _text(expense.submitted_at),
        _text(expense.approved_at),
        _text(expense.created_at),
    ]


def _text(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None
