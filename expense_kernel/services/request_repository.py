"""
RequestRepository -- keyed storage for expense requests.

Responsibility:
    Create, look up, list and mutate expense requests.  ``update_status`` is
    the single mutation point for lifecycle state, so the "no transition out
    of a terminal state" rule is enforced here as well as in the workflow
    service.

Architecture position:
    Kernel > Services -- imperative shell.  Implementations:
      * InMemoryRequestRepository -- dict + lock; tests and demos.
      * SqlRequestRepository      -- SQLAlchemy; one committed session per
                                     operation.

Invariants enforced:
    - request_id uniqueness (DuplicateRequestError).
    - Status changes are compare-and-swap on Pending: of two concurrent
      updates for the same id, exactly one succeeds; the other raises
      InvalidTransitionError.
    - Every call returns only after its change is committed.

Failure modes:
    - RequestNotFoundError for unknown ids.
    - InvalidTransitionError for a transition the lifecycle forbids.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from expense_kernel.db.engine import session_scope
from expense_kernel.domain.values import (
    ExpenseRequest,
    ExpenseStatus,
    ReviewerComment,
)
from expense_kernel.domain.workflow import can_transition
from expense_kernel.exceptions import (
    DuplicateRequestError,
    InvalidTransitionError,
    RequestNotFoundError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.expense_request import (
    ExpenseCommentModel,
    ExpenseRequestModel,
)

logger = get_logger("services.request_repository")


@runtime_checkable
class RequestRepository(Protocol):
    """Storage contract shared by every backend."""

    def create(self, request: ExpenseRequest) -> ExpenseRequest: ...

    def get(self, request_id: str) -> ExpenseRequest: ...

    def update_status(
        self,
        request_id: str,
        new_status: ExpenseStatus,
        *,
        decided_at: datetime,
    ) -> ExpenseRequest: ...

    def add_comment(self, request_id: str, comment: ReviewerComment) -> ExpenseRequest: ...

    def list(self, status: ExpenseStatus | None = None) -> list[ExpenseRequest]: ...


class InMemoryRequestRepository:
    """Dict-backed repository; a single lock makes each call atomic."""

    def __init__(self) -> None:
        self._requests: dict[str, ExpenseRequest] = {}
        self._lock = threading.Lock()

    def create(self, request: ExpenseRequest) -> ExpenseRequest:
        with self._lock:
            if request.request_id in self._requests:
                raise DuplicateRequestError(request.request_id)
            self._requests[request.request_id] = request
        return request

    def get(self, request_id: str) -> ExpenseRequest:
        with self._lock:
            return self._get_locked(request_id)

    def update_status(
        self,
        request_id: str,
        new_status: ExpenseStatus,
        *,
        decided_at: datetime,
    ) -> ExpenseRequest:
        with self._lock:
            current = self._get_locked(request_id)
            if not can_transition(current.status, new_status):
                raise InvalidTransitionError(
                    request_id, current.status.value, new_status.value,
                )
            updated = current.with_status(new_status, decided_at)
            self._requests[request_id] = updated
        return updated

    def add_comment(self, request_id: str, comment: ReviewerComment) -> ExpenseRequest:
        with self._lock:
            updated = self._get_locked(request_id).with_comment(comment)
            self._requests[request_id] = updated
        return updated

    def list(self, status: ExpenseStatus | None = None) -> list[ExpenseRequest]:
        with self._lock:
            items = list(self._requests.values())
        if status is not None:
            items = [r for r in items if r.status is status]
        return sorted(items, key=lambda r: (r.submitted_at, r.request_id))

    def _get_locked(self, request_id: str) -> ExpenseRequest:
        try:
            return self._requests[request_id]
        except KeyError:
            raise RequestNotFoundError(request_id) from None


class SqlRequestRepository:
    """
    SQLAlchemy-backed repository.

    Contract:
        Holds a session factory, not a session: each call runs in its own
        ``session_scope`` and is committed before returning, so worker
        threads never share a Session.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create(self, request: ExpenseRequest) -> ExpenseRequest:
        try:
            with session_scope(self._session_factory) as session:
                if session.get(ExpenseRequestModel, request.request_id) is not None:
                    raise DuplicateRequestError(request.request_id)
                session.add(ExpenseRequestModel.from_dto(request))
        except IntegrityError:
            # lost a race with a concurrent insert of the same id
            raise DuplicateRequestError(request.request_id) from None
        logger.debug("request_stored", extra={"request_id": request.request_id})
        return request

    def get(self, request_id: str) -> ExpenseRequest:
        with session_scope(self._session_factory) as session:
            return self._load(session, request_id).to_dto()

    def update_status(
        self,
        request_id: str,
        new_status: ExpenseStatus,
        *,
        decided_at: datetime,
    ) -> ExpenseRequest:
        with session_scope(self._session_factory) as session:
            if can_transition(ExpenseStatus.PENDING, new_status):
                result = session.execute(
                    update(ExpenseRequestModel)
                    .where(
                        ExpenseRequestModel.request_id == request_id,
                        ExpenseRequestModel.status == ExpenseStatus.PENDING.value,
                    )
                    .values(status=new_status.value, decided_at=decided_at)
                    .execution_options(synchronize_session=False)
                )
                swapped = result.rowcount == 1
            else:
                swapped = False

            if not swapped:
                current = self._load(session, request_id)
                raise InvalidTransitionError(
                    request_id, current.status, new_status.value,
                )
        return self.get(request_id)

    def add_comment(self, request_id: str, comment: ReviewerComment) -> ExpenseRequest:
        with session_scope(self._session_factory) as session:
            self._load(session, request_id)
            session.add(
                ExpenseCommentModel(
                    request_id=request_id,
                    text=comment.text,
                    recorded_at=comment.recorded_at,
                )
            )
        return self.get(request_id)

    def list(self, status: ExpenseStatus | None = None) -> list[ExpenseRequest]:
        stmt = select(ExpenseRequestModel).order_by(
            ExpenseRequestModel.submitted_at, ExpenseRequestModel.request_id,
        )
        if status is not None:
            stmt = stmt.where(ExpenseRequestModel.status == status.value)
        with session_scope(self._session_factory) as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    @staticmethod
    def _load(session: Session, request_id: str) -> ExpenseRequestModel:
        model = session.get(ExpenseRequestModel, request_id)
        if model is None:
            raise RequestNotFoundError(request_id)
        return model
