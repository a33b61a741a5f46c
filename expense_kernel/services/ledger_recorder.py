"""
LedgerRecorder -- append-only decision ledger.

Responsibility:
    Write exactly one row per decision event to an external durable store.
    Rows are never updated or deleted.

Architecture position:
    Kernel > Services -- imperative shell, outbound adapter.  Backends:
      * SheetsLedgerRecorder   -- Google Sheets via gspread (production).
      * SqlLedgerRecorder      -- ``expense_ledger`` table via SQLAlchemy.
      * InMemoryLedgerRecorder -- list-backed, for tests.

Invariants enforced:
    - One ``append`` call writes at most one row.
    - No internal retry: a failed append raises LedgerAppendError at once
      and the caller decides whether to re-issue the same record.
    - Concurrent appends for different requests are safe; the store's own
      per-row append is the atomic unit.

Failure modes:
    - LedgerAppendError wrapping gspread, transport, credential or database
      errors.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import gspread
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from gspread.exceptions import GSpreadException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from expense_kernel.db.engine import session_scope
from expense_kernel.domain.values import LEDGER_HEADER, LedgerRecord
from expense_kernel.exceptions import LedgerAppendError
from expense_kernel.logging_config import get_logger
from expense_kernel.models.ledger_record import LedgerRecordModel

logger = get_logger("services.ledger_recorder")

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


@runtime_checkable
class LedgerRecorder(Protocol):
    def append(self, record: LedgerRecord) -> None: ...


class InMemoryLedgerRecorder:
    """List-backed recorder; ``records`` is a snapshot copy."""

    def __init__(self) -> None:
        self._records: list[LedgerRecord] = []
        self._lock = threading.Lock()

    def append(self, record: LedgerRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[LedgerRecord]:
        with self._lock:
            return list(self._records)

    def rows(self) -> list[list[str]]:
        return [r.as_row() for r in self.records]


class SqlLedgerRecorder:
    """Insert-only recorder over the ``expense_ledger`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def append(self, record: LedgerRecord) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(LedgerRecordModel.from_dto(record))
        except SQLAlchemyError as exc:
            raise LedgerAppendError(record.request_id, str(exc)) from exc

    def records(self, request_id: str | None = None) -> list[LedgerRecord]:
        stmt = select(LedgerRecordModel).order_by(LedgerRecordModel.decided_at)
        if request_id is not None:
            stmt = stmt.where(LedgerRecordModel.request_id == request_id)
        with session_scope(self._session_factory) as session:
            return [m.to_dto() for m in session.scalars(stmt)]


class SheetsLedgerRecorder:
    """
    Appends decision rows to a Google Sheets worksheet.

    Contract:
        The worksheet is opened lazily on first append and reused.  When
        ``ensure_header`` is set and the sheet is empty, the header row is
        written before the first record.

    Failure modes:
        Credential, open and append failures all surface as
        LedgerAppendError; a failed open is retried on the next call.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        worksheet: str = "Sheet1",
        service_account_file: str | None = None,
        service_account_info: dict[str, Any] | None = None,
        value_input_option: str = "USER_ENTERED",
        ensure_header: bool = True,
        worksheet_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._worksheet_name = worksheet
        self._service_account_file = service_account_file
        self._service_account_info = service_account_info
        self._value_input_option = value_input_option
        self._ensure_header = ensure_header
        self._worksheet_factory = worksheet_factory or self._open_worksheet
        self._worksheet: Any = None
        self._open_lock = threading.Lock()

    def append(self, record: LedgerRecord) -> None:
        try:
            worksheet = self._get_worksheet()
            worksheet.append_row(
                record.as_row(), value_input_option=self._value_input_option,
            )
        except (GSpreadException, GoogleAuthError, OSError, ValueError) as exc:
            logger.warning(
                "sheets_append_failed",
                extra={
                    "request_id": record.request_id,
                    "spreadsheet_id": self._spreadsheet_id,
                    "worksheet": self._worksheet_name,
                    "error": str(exc),
                },
            )
            raise LedgerAppendError(record.request_id, str(exc)) from exc
        logger.info(
            "sheets_row_appended",
            extra={
                "request_id": record.request_id,
                "worksheet": self._worksheet_name,
                "status": record.status.value,
            },
        )

    def _get_worksheet(self) -> Any:
        with self._open_lock:
            if self._worksheet is None:
                worksheet = self._worksheet_factory()
                if self._ensure_header and not worksheet.row_values(1):
                    worksheet.append_row(
                        list(LEDGER_HEADER), value_input_option="RAW",
                    )
                self._worksheet = worksheet
            return self._worksheet

    def _credentials(self) -> Credentials:
        if self._service_account_info:
            return Credentials.from_service_account_info(
                self._service_account_info, scopes=SHEETS_SCOPES,
            )
        if self._service_account_file:
            return Credentials.from_service_account_file(
                self._service_account_file, scopes=SHEETS_SCOPES,
            )
        raise ValueError("Google service account credentials not configured")

    def _open_worksheet(self) -> gspread.Worksheet:
        if not self._spreadsheet_id:
            raise ValueError("Google spreadsheet id not configured")
        client = gspread.authorize(self._credentials())
        return client.open_by_key(self._spreadsheet_id).worksheet(self._worksheet_name)
