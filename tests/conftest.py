"""
Pytest fixtures for the expense kernel test suite.

Provides:
- Structured logging configured once per session, plus a log capture fixture
- A deterministic clock pinned to 2024-03-01 12:00 UTC
- In-memory repository / recorder / channel doubles and a wired workflow service
- SQLite-backed session factories for the SQL repository and ledger

SQL tests run against a file-backed SQLite database under ``tmp_path`` so
worker threads get their own connections.  Set ``DATABASE_URL`` to run
them against PostgreSQL instead.
"""

import itertools
import json
import logging
import os
from datetime import datetime, timezone
from io import StringIO

import pytest

from expense_kernel.db.engine import build_engine, create_tables, drop_tables
from expense_kernel.domain.clock import DeterministicClock
from expense_kernel.logging_config import (
    ExpenseLogFormatter,
    LogContext,
    configure_logging,
    reset_logging,
)
from expense_kernel.services.ledger_recorder import InMemoryLedgerRecorder
from expense_kernel.services.notification_dispatcher import (
    InMemoryChannel,
    NotificationDispatcher,
)
from expense_kernel.services.request_repository import InMemoryRequestRepository
from expense_kernel.services.workflow_service import ExpenseWorkflowService
from sqlalchemy.orm import sessionmaker

FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

APPROVER_EMAIL = "approver@company.com"
SUBMITTER_EMAIL = "jane.smith@company.com"


def make_form(**overrides):
    """A submission that passes every rule at FIXED_NOW."""
    form = {
        "name": "Jane Smith",
        "employee_id": "E-1042",
        "expense_type": "Travel",
        "bill_date": "2024-02-25",
        "amount": "150.00",
        "approver_email": APPROVER_EMAIL,
        "submitter_email": SUBMITTER_EMAIL,
    }
    form.update(overrides)
    return {k: v for k, v in form.items() if v is not None}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture expense_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_service):
            workflow_service.submit(make_form())
            logs = captured_logs()
            assert any(r["message"] == "request_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(ExpenseLogFormatter())
    root = logging.getLogger("expense_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(FIXED_NOW)


@pytest.fixture
def valid_form():
    return make_form()


# =============================================================================
# In-memory service wiring
# =============================================================================


@pytest.fixture
def repository():
    return InMemoryRequestRepository()


@pytest.fixture
def recorder():
    return InMemoryLedgerRecorder()


@pytest.fixture
def channel():
    return InMemoryChannel()


@pytest.fixture
def dispatcher(channel, deterministic_clock):
    return NotificationDispatcher(channel, clock=deterministic_clock)


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"REQ-{next(counter):04d}"


@pytest.fixture
def workflow_service(repository, dispatcher, recorder, deterministic_clock, id_factory):
    service = ExpenseWorkflowService(
        repository,
        dispatcher,
        recorder,
        deterministic_clock,
        external_timeout_seconds=2.0,
        approvers={"1": "alice.manager@company.com", "2": APPROVER_EMAIL},
        id_factory=id_factory,
    )
    yield service
    service.close()


# =============================================================================
# SQL fixtures
# =============================================================================


@pytest.fixture
def sql_engine(tmp_path):
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'expenses.db'}"
    engine = build_engine(url)
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def sql_session_factory(sql_engine):
    return sessionmaker(bind=sql_engine, expire_on_commit=False)
