"""
Pure domain layer.

Value objects, the request lifecycle definition, and submission
validation, with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Network or mail
- The system clock (time is injected through ``Clock``)
"""

from expense_kernel.domain.clock import (
    Clock,
    DeterministicClock,
    SequentialClock,
    SystemClock,
)
from expense_kernel.domain.validation import validate_submission
from expense_kernel.domain.values import (
    LEDGER_HEADER,
    Decision,
    ExpenseRequest,
    ExpenseStatus,
    ExpenseType,
    LedgerRecord,
    ReviewerComment,
    SubmissionData,
    ValidationResult,
)
from expense_kernel.domain.workflow import (
    EXPENSE_REQUEST_WORKFLOW,
    can_transition,
    is_terminal,
    transition_for,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SequentialClock",
    "SystemClock",
    "validate_submission",
    "LEDGER_HEADER",
    "Decision",
    "ExpenseRequest",
    "ExpenseStatus",
    "ExpenseType",
    "LedgerRecord",
    "ReviewerComment",
    "SubmissionData",
    "ValidationResult",
    "EXPENSE_REQUEST_WORKFLOW",
    "can_transition",
    "is_terminal",
    "transition_for",
]
