"""
Expense workflow configuration schema.

Frozen dataclasses that the loader builds from YAML.  They carry plain
values only; wiring them into services is ``expense_kernel.services.factory``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

LEDGER_BACKENDS = ("sheets", "sql", "memory")
NOTIFICATION_TRANSPORTS = ("smtp", "log", "memory")


@dataclass(frozen=True)
class WorkflowSettings:
    max_bill_age_days: int = 30
    external_timeout_seconds: float = 10.0
    max_workers: int = 8


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///expenses.db"
    echo: bool = False


@dataclass(frozen=True)
class LedgerSettings:
    """Where decision rows go."""

    backend: str = "sheets"
    spreadsheet_id: str = ""
    worksheet: str = "Sheet1"
    service_account_file: str | None = None
    value_input_option: str = "USER_ENTERED"
    ensure_header: bool = True


@dataclass(frozen=True)
class NotificationSettings:
    """How notifications leave the system."""

    transport: str = "log"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    use_tls: bool = True
    sender: str = "expenses@localhost"
    timeout_seconds: float = 10.0
    finance_mailbox: str | None = None
    employee_email_domain: str | None = None


@dataclass(frozen=True)
class ApproverDef:
    """An entry in the approver picker."""

    approver_id: str
    name: str
    email: str


@dataclass(frozen=True)
class ExpenseConfig:
    """Complete, validated configuration for one deployment."""

    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    approvers: tuple[ApproverDef, ...] = ()
    checksum: str = ""

    def approver_emails(self) -> dict[str, str]:
        """approver_id -> email, for resolving the picker's selection."""
        return {a.approver_id: a.email for a in self.approvers}
