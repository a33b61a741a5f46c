"""
Submission validation (``expense_kernel.domain.validation``).

Pure checks with no I/O.  ``validate_submission`` looks at every field and
reports all violations in one pass so a form can show per-field feedback;
it never stops at the first error.

Form keys may use the Python names (``employee_id``) or the names the web
form posts (``employeeId``).  Error keys always use the Python names.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from expense_kernel.domain.values import (
    CENT,
    MAX_AMOUNT,
    ExpenseType,
    SubmissionData,
    ValidationResult,
)

DEFAULT_MAX_BILL_AGE_DAYS = 30
MIN_NAME_LENGTH = 2

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "employee_name", "employeeName"),
    "employee_id": ("employee_id", "employeeId"),
    "expense_type": ("expense_type", "expenseType"),
    "bill_date": ("bill_date", "billDate"),
    "amount": ("amount",),
    "approver_email": ("approver_email", "approverEmail"),
    "approver_id": ("approver_id", "approverId"),
    "attachments": ("attachments",),
    "submitter_email": ("submitter_email", "submitterEmail"),
}


def read_field(form: Mapping[str, Any], field: str) -> Any:
    """Return the first alias of ``field`` present in ``form``, else None."""
    for key in FIELD_ALIASES.get(field, (field,)):
        if key in form:
            return form[key]
    return None


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and EMAIL_PATTERN.match(value.strip()) is not None


def parse_amount(value: Any) -> Decimal:
    """Coerce a form amount to Decimal.

    Raises ValueError for booleans, non-numeric text, NaN and infinities.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("amount must be a number")
    try:
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, int):
            amount = Decimal(value)
        elif isinstance(value, float):
            # repr keeps 75.5 as 75.5 instead of the binary expansion
            amount = Decimal(repr(value))
        elif isinstance(value, str):
            amount = Decimal(value.strip())
        else:
            raise ValueError("amount must be a number")
    except InvalidOperation:
        raise ValueError("amount must be a number") from None
    if not amount.is_finite():
        raise ValueError("amount must be a finite number")
    return amount


def parse_bill_date(value: Any) -> date:
    """Accept a ``date`` or an ISO-8601 ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        return date.fromisoformat(value.strip())
    raise ValueError("bill date must be an ISO-8601 date")


def bill_age(bill_date: date, now: datetime) -> timedelta:
    """Calendar-time age of a bill, measured from midnight UTC of its date."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = datetime.combine(bill_date, time.min, tzinfo=timezone.utc)
    return now.astimezone(timezone.utc) - start


def is_within_max_age(
    bill_date: date,
    now: datetime,
    max_age_days: int = DEFAULT_MAX_BILL_AGE_DAYS,
) -> bool:
    """True when the bill is at most ``max_age_days`` old (inclusive)."""
    return bill_age(bill_date, now) <= timedelta(days=max_age_days)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def validate_submission(
    form: Mapping[str, Any],
    now: datetime,
    *,
    max_age_days: int = DEFAULT_MAX_BILL_AGE_DAYS,
) -> ValidationResult:
    """Validate a candidate submission against every field rule."""
    errors: dict[str, str] = {}

    name = _text(read_field(form, "name"))
    if not name:
        errors["name"] = "name is required"
    elif len(name) < MIN_NAME_LENGTH:
        errors["name"] = f"name must be at least {MIN_NAME_LENGTH} characters"

    employee_id = _text(read_field(form, "employee_id"))
    if not employee_id:
        errors["employee_id"] = "employee id is required"

    raw_type = read_field(form, "expense_type")
    expense_type: ExpenseType | None = None
    try:
        expense_type = ExpenseType(raw_type)
    except ValueError:
        allowed = ", ".join(t.value for t in ExpenseType)
        errors["expense_type"] = f"expense type must be one of: {allowed}"

    bill_date: date | None = None
    try:
        bill_date = parse_bill_date(read_field(form, "bill_date"))
    except ValueError:
        errors["bill_date"] = "bill date must be an ISO-8601 date (YYYY-MM-DD)"
    else:
        if not is_within_max_age(bill_date, now, max_age_days):
            errors["bill_date"] = (
                f"bill date must be within the last {max_age_days} days"
            )

    amount: Decimal | None = None
    try:
        amount = parse_amount(read_field(form, "amount"))
    except ValueError as exc:
        errors["amount"] = str(exc)
    else:
        if amount <= 0:
            errors["amount"] = "amount must be greater than zero"
        elif amount > MAX_AMOUNT:
            errors["amount"] = f"amount must not exceed {MAX_AMOUNT}"
        elif amount != amount.quantize(CENT):
            errors["amount"] = "amount must have at most 2 decimal places"

    approver_email = _text(read_field(form, "approver_email"))
    if not is_valid_email(approver_email):
        errors["approver_email"] = "approver email must be a valid email address"

    raw_attachments = read_field(form, "attachments")
    attachments: tuple[str, ...] = ()
    if raw_attachments is not None:
        if isinstance(raw_attachments, (list, tuple)) and all(
            isinstance(a, str) and a.strip() for a in raw_attachments
        ):
            attachments = tuple(a.strip() for a in raw_attachments)
        else:
            errors["attachments"] = "attachments must be a list of references"

    submitter_email = _text(read_field(form, "submitter_email")) or None
    if submitter_email is not None and not is_valid_email(submitter_email):
        errors["submitter_email"] = "submitter email must be a valid email address"

    if errors:
        return ValidationResult(errors=errors)

    return ValidationResult(
        data=SubmissionData(
            employee_name=name,
            employee_id=employee_id,
            expense_type=expense_type,
            amount=amount,
            bill_date=bill_date,
            approver_email=approver_email,
            attachments=attachments,
            submitter_email=submitter_email,
        )
    )
