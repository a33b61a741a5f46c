"""
Module: expense_kernel.models.expense_request
Responsibility: ORM persistence for expense requests and reviewer comments.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - status is one of Pending/Approved/Rejected (check constraint).
    - amount > 0 (check constraint).
    - request_id is the primary key; duplicates fail with IntegrityError,
      which the repository maps to DuplicateRequestError.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_kernel.db.base import Base, UUIDString
from expense_kernel.domain.values import (
    ExpenseRequest,
    ExpenseStatus,
    ExpenseType,
    ReviewerComment,
)


class ExpenseRequestModel(Base):
    """Persistent expense request.

    Contract:
        Status moves only Pending -> Approved/Rejected; the repository
        enforces it with a compare-and-swap UPDATE on status.
    """

    __tablename__ = "expense_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending', 'Approved', 'Rejected')",
            name="ck_expense_requests_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_expense_requests_positive_amount"),
        Index("ix_expense_requests_status_submitted", "status", "submitted_at"),
    )

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    employee_name: Mapped[str] = mapped_column(String(200), nullable=False)
    employee_id: Mapped[str] = mapped_column(String(100), nullable=False)
    expense_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    bill_date: Mapped[date] = mapped_column(Date, nullable=False)
    approver_email: Mapped[str] = mapped_column(String(320), nullable=False)
    submitter_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExpenseStatus.PENDING.value,
    )
    attachments: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    comments: Mapped[list[ExpenseCommentModel]] = relationship(
        back_populates="request",
        order_by="ExpenseCommentModel.recorded_at",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ExpenseRequest {self.request_id} status={self.status}>"

    def to_dto(self) -> ExpenseRequest:
        """Convert ORM model to frozen domain object."""
        return ExpenseRequest(
            request_id=self.request_id,
            employee_name=self.employee_name,
            employee_id=self.employee_id,
            expense_type=ExpenseType(self.expense_type),
            amount=Decimal(self.amount),
            bill_date=self.bill_date,
            approver_email=self.approver_email,
            submitted_at=self.submitted_at,
            status=ExpenseStatus(self.status),
            attachments=tuple(self.attachments or ()),
            comments=tuple(c.to_dto() for c in self.comments),
            decided_at=self.decided_at,
            submitter_email=self.submitter_email,
        )

    @classmethod
    def from_dto(cls, dto: ExpenseRequest) -> ExpenseRequestModel:
        """Create ORM model from domain object (comments excluded)."""
        return cls(
            request_id=dto.request_id,
            employee_name=dto.employee_name,
            employee_id=dto.employee_id,
            expense_type=dto.expense_type.value,
            amount=dto.amount,
            bill_date=dto.bill_date,
            approver_email=dto.approver_email,
            submitter_email=dto.submitter_email,
            status=dto.status.value,
            attachments=list(dto.attachments),
            submitted_at=dto.submitted_at,
            decided_at=dto.decided_at,
        )


class ExpenseCommentModel(Base):
    """A reviewer comment attached to a request; never changes status."""

    __tablename__ = "expense_comments"

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)
    request_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("expense_requests.request_id"), nullable=False, index=True,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped[ExpenseRequestModel] = relationship(back_populates="comments")

    def to_dto(self) -> ReviewerComment:
        return ReviewerComment(text=self.text, recorded_at=self.recorded_at)
