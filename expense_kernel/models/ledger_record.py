"""
Module: expense_kernel.models.ledger_record
Responsibility: ORM persistence for the append-only decision ledger when
    the ledger backend is a SQL database instead of a spreadsheet.
Architecture position: Kernel > Models.

Invariants enforced:
    - Rows are insert-only; db/immutability.py blocks ORM UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base, UUIDString
from expense_kernel.domain.values import ExpenseStatus, ExpenseType, LedgerRecord


class LedgerRecordModel(Base):
    """One row per decision event, in ledger column order."""

    __tablename__ = "expense_ledger"

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    employee_name: Mapped[str] = mapped_column(String(200), nullable=False)
    employee_id: Mapped[str] = mapped_column(String(100), nullable=False)
    expense_type: Mapped[str] = mapped_column(String(50), nullable=False)
    bill_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    approver_email: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerRecord {self.request_id} status={self.status}>"

    def to_dto(self) -> LedgerRecord:
        return LedgerRecord(
            request_id=self.request_id,
            employee_name=self.employee_name,
            employee_id=self.employee_id,
            expense_type=ExpenseType(self.expense_type),
            bill_date=self.bill_date,
            amount=Decimal(self.amount),
            approver_email=self.approver_email,
            status=ExpenseStatus(self.status),
            decided_at=self.decided_at,
        )

    @classmethod
    def from_dto(cls, dto: LedgerRecord) -> LedgerRecordModel:
        return cls(
            request_id=dto.request_id,
            employee_name=dto.employee_name,
            employee_id=dto.employee_id,
            expense_type=dto.expense_type.value,
            bill_date=dto.bill_date,
            amount=dto.amount,
            approver_email=dto.approver_email,
            status=dto.status.value,
            decided_at=dto.decided_at,
        )
