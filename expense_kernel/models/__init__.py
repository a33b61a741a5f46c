"""SQLAlchemy ORM models for the expense kernel."""

from expense_kernel.models.expense_request import (
    ExpenseCommentModel,
    ExpenseRequestModel,
)
from expense_kernel.models.ledger_record import LedgerRecordModel

__all__ = [
    "ExpenseCommentModel",
    "ExpenseRequestModel",
    "LedgerRecordModel",
]
