"""Services for the expense kernel (imperative shell)."""

from expense_kernel.services.factory import build_workflow_service
from expense_kernel.services.ledger_recorder import (
    InMemoryLedgerRecorder,
    LedgerRecorder,
    SheetsLedgerRecorder,
    SqlLedgerRecorder,
)
from expense_kernel.services.notification_dispatcher import (
    InMemoryChannel,
    LoggingChannel,
    Notification,
    NotificationAttempt,
    NotificationDispatcher,
    NotificationKind,
    SmtpEmailChannel,
)
from expense_kernel.services.request_repository import (
    InMemoryRequestRepository,
    RequestRepository,
    SqlRequestRepository,
)
from expense_kernel.services.workflow_service import (
    DecisionResult,
    ExpenseWorkflowService,
    SideEffectFailure,
    SideEffectReport,
    SubmissionResult,
)

__all__ = [
    "DecisionResult",
    "ExpenseWorkflowService",
    "InMemoryChannel",
    "InMemoryLedgerRecorder",
    "InMemoryRequestRepository",
    "LedgerRecorder",
    "LoggingChannel",
    "Notification",
    "NotificationAttempt",
    "NotificationDispatcher",
    "NotificationKind",
    "RequestRepository",
    "SheetsLedgerRecorder",
    "SideEffectFailure",
    "SideEffectReport",
    "SmtpEmailChannel",
    "SqlLedgerRecorder",
    "SqlRequestRepository",
    "SubmissionResult",
    "build_workflow_service",
]
