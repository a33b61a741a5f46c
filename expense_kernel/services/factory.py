"""
Service factory -- builds a wired ExpenseWorkflowService from configuration.

Responsibility:
    The single composition root.  Picks the repository, ledger recorder and
    notification channel named by an ``ExpenseConfig`` and hands them to the
    workflow service.  Nothing else in the kernel reads configuration.

Architecture position:
    Kernel > Services.  The only kernel module that imports ``expense_config``.
"""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from expense_config.schema import ExpenseConfig, LedgerSettings, NotificationSettings
from expense_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from expense_kernel.domain.clock import Clock
from expense_kernel.logging_config import get_logger
from expense_kernel.services.ledger_recorder import (
    InMemoryLedgerRecorder,
    LedgerRecorder,
    SheetsLedgerRecorder,
    SqlLedgerRecorder,
)
from expense_kernel.services.notification_dispatcher import (
    InMemoryChannel,
    LoggingChannel,
    NotificationChannel,
    NotificationDispatcher,
    SmtpEmailChannel,
)
from expense_kernel.services.request_repository import (
    InMemoryRequestRepository,
    RequestRepository,
    SqlRequestRepository,
)
from expense_kernel.services.workflow_service import ExpenseWorkflowService

logger = get_logger("services.factory")


def build_ledger_recorder(
    settings: LedgerSettings,
    session_factory: sessionmaker[Session] | None,
) -> LedgerRecorder:
    if settings.backend == "sheets":
        return SheetsLedgerRecorder(
            settings.spreadsheet_id,
            worksheet=settings.worksheet,
            service_account_file=settings.service_account_file,
            value_input_option=settings.value_input_option,
            ensure_header=settings.ensure_header,
        )
    if settings.backend == "sql":
        if session_factory is None:
            raise ValueError("sql ledger backend requires a database session factory")
        return SqlLedgerRecorder(session_factory)
    if settings.backend == "memory":
        return InMemoryLedgerRecorder()
    raise ValueError(f"Unknown ledger backend: {settings.backend!r}")


def build_channel(settings: NotificationSettings) -> NotificationChannel:
    if settings.transport == "smtp":
        return SmtpEmailChannel(
            settings.smtp_host,
            settings.smtp_port,
            sender=settings.sender,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.use_tls,
            timeout=settings.timeout_seconds,
            employee_email_domain=settings.employee_email_domain,
        )
    if settings.transport == "log":
        return LoggingChannel()
    if settings.transport == "memory":
        return InMemoryChannel()
    raise ValueError(f"Unknown notification transport: {settings.transport!r}")


MEMORY_DATABASE_URL = "memory://"


def build_workflow_service(
    config: ExpenseConfig,
    clock: Clock | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> ExpenseWorkflowService:
    """
    Wire a workflow service for ``config``.

    A database url of ``memory://`` keeps requests in process memory; any
    other url is opened with SQLAlchemy and its tables are created.
    Passing ``session_factory`` skips engine initialization.
    """
    in_memory = config.database.url == MEMORY_DATABASE_URL
    if in_memory and config.ledger.backend == "sql":
        raise ValueError("sql ledger backend requires a database url")

    if not in_memory and session_factory is None:
        engine = init_engine_from_url(config.database.url, echo=config.database.echo)
        create_tables(engine)
        session_factory = get_session_factory()

    repository: RequestRepository
    if in_memory:
        repository = InMemoryRequestRepository()
    else:
        repository = SqlRequestRepository(session_factory)

    recorder = build_ledger_recorder(config.ledger, session_factory)
    dispatcher = NotificationDispatcher(build_channel(config.notifications), clock=clock)

    logger.info(
        "workflow_service_built",
        extra={
            "repository": type(repository).__name__,
            "ledger_backend": config.ledger.backend,
            "notification_transport": config.notifications.transport,
            "config_checksum": config.checksum,
        },
    )
    return ExpenseWorkflowService(
        repository,
        dispatcher,
        recorder,
        clock,
        max_bill_age_days=config.workflow.max_bill_age_days,
        external_timeout_seconds=config.workflow.external_timeout_seconds,
        max_workers=config.workflow.max_workers,
        approvers=config.approver_emails(),
        finance_mailbox=config.notifications.finance_mailbox,
    )
