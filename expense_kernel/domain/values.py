"""
Expense request value objects (``expense_kernel.domain.values``).

Responsibility
--------------
The nouns of the reimbursement workflow: expense types, request status,
approver decisions, the request itself, reviewer comments, and the
flattened ledger projection written once per decision.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/``, or outer layers.

Invariants enforced
-------------------
* ``ExpenseRequest.amount`` is a Decimal quantized to cents and > 0.
* ``ExpenseRequest`` is frozen; status changes produce a new instance
  through ``with_status`` (the repository is the only caller).
* ``LedgerRecord`` is frozen and carries the decision timestamp it was
  built with; retries reuse the same record.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

CENT = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")


class ExpenseType(str, Enum):
    """Reimbursable expense categories (display values are canonical)."""

    TRAVEL = "Travel"
    MOBILE = "Mobile"
    FOOD_DRINKS = "Food/Drinks"
    OFFICE_SUPPLIES = "Office Supplies"
    FUEL = "Fuel"
    OTHERS = "Others"


class ExpenseStatus(str, Enum):
    """Expense request lifecycle states."""

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class Decision(str, Enum):
    """Verdicts an approver can give on a Pending request."""

    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def target_status(self) -> ExpenseStatus:
        return ExpenseStatus(self.value)

    @classmethod
    def parse(cls, value: Decision | ExpenseStatus | str) -> Decision:
        """Accept the enum, a matching status, or a case-insensitive name.

        Raises ValueError for anything that is not Approved/Rejected.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, ExpenseStatus):
            return cls(value.value)
        text = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown decision: {value!r}")


@dataclass(frozen=True)
class ReviewerComment:
    """A free-text note left by a reviewer; metadata only."""

    text: str
    recorded_at: datetime


@dataclass(frozen=True)
class ExpenseRequest:
    """A single employee expense claim moving through the approval lifecycle."""

    request_id: str
    employee_name: str
    employee_id: str
    expense_type: ExpenseType
    amount: Decimal
    bill_date: date
    approver_email: str
    submitted_at: datetime
    status: ExpenseStatus = ExpenseStatus.PENDING
    attachments: tuple[str, ...] = ()
    comments: tuple[ReviewerComment, ...] = ()
    decided_at: datetime | None = None
    submitter_email: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            raise TypeError(
                f"amount must be Decimal, not {type(self.amount).__name__}"
            )
        if self.amount <= 0:
            raise ValueError(f"amount must be positive, got {self.amount}")
        if self.amount > MAX_AMOUNT:
            raise ValueError(f"amount must not exceed {MAX_AMOUNT}, got {self.amount}")
        object.__setattr__(self, "amount", self.amount.quantize(CENT))

    @property
    def is_pending(self) -> bool:
        return self.status is ExpenseStatus.PENDING

    @property
    def reviewer_comment(self) -> str | None:
        """Latest reviewer comment, if any."""
        return self.comments[-1].text if self.comments else None

    @property
    def submitter_address(self) -> str:
        """Where submitter notifications go: explicit email, else employee id."""
        return self.submitter_email or self.employee_id

    def with_status(self, status: ExpenseStatus, decided_at: datetime) -> ExpenseRequest:
        return replace(self, status=status, decided_at=decided_at)

    def with_comment(self, comment: ReviewerComment) -> ExpenseRequest:
        return replace(self, comments=self.comments + (comment,))

    def describe(self) -> dict[str, Any]:
        """Flat field rendering used in notification payloads."""
        return {
            "request_id": self.request_id,
            "employee_name": self.employee_name,
            "employee_id": self.employee_id,
            "expense_type": self.expense_type.value,
            "amount": f"{self.amount:.2f}",
            "bill_date": self.bill_date.isoformat(),
            "approver_email": self.approver_email,
            "status": self.status.value,
            "attachments": list(self.attachments),
            "comment": self.reviewer_comment,
        }


LEDGER_HEADER: tuple[str, ...] = (
    "Name",
    "Employee ID",
    "Expense Type",
    "Bill Date",
    "Amount",
    "Approver Email",
    "Status",
    "Decision Timestamp",
)


@dataclass(frozen=True)
class LedgerRecord:
    """Append-only projection of a request at the moment of a decision."""

    request_id: str
    employee_name: str
    employee_id: str
    expense_type: ExpenseType
    bill_date: date
    amount: Decimal
    approver_email: str
    status: ExpenseStatus
    decided_at: datetime

    @classmethod
    def from_request(cls, request: ExpenseRequest) -> LedgerRecord:
        if request.is_pending or request.decided_at is None:
            raise ValueError(
                f"Request {request.request_id} has no decision to record"
            )
        return cls(
            request_id=request.request_id,
            employee_name=request.employee_name,
            employee_id=request.employee_id,
            expense_type=request.expense_type,
            bill_date=request.bill_date,
            amount=request.amount,
            approver_email=request.approver_email,
            status=request.status,
            decided_at=request.decided_at,
        )

    def as_row(self) -> list[str]:
        """Canonical spreadsheet row, in ``LEDGER_HEADER`` order."""
        return [
            self.employee_name,
            self.employee_id,
            self.expense_type.value,
            self.bill_date.isoformat(),
            f"{self.amount:.2f}",
            self.approver_email,
            self.status.value,
            self.decided_at.isoformat(),
        ]


@dataclass(frozen=True)
class SubmissionData:
    """Normalized, already-validated submission fields."""

    employee_name: str
    employee_id: str
    expense_type: ExpenseType
    amount: Decimal
    bill_date: date
    approver_email: str
    attachments: tuple[str, ...] = ()
    submitter_email: str | None = None

    def to_request(self, request_id: str, submitted_at: datetime) -> ExpenseRequest:
        return ExpenseRequest(
            request_id=request_id,
            employee_name=self.employee_name,
            employee_id=self.employee_id,
            expense_type=self.expense_type,
            amount=self.amount,
            bill_date=self.bill_date,
            approver_email=self.approver_email,
            submitted_at=submitted_at,
            attachments=self.attachments,
            submitter_email=self.submitter_email,
        )


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a submission: all field errors, or the data."""

    errors: dict[str, str] = field(default_factory=dict)
    data: SubmissionData | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors
