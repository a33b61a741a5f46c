"""
Configuration Loader (``expense_config.loader``).

Responsibility
--------------
Loads a YAML configuration file, applies environment overrides for
secrets and deployment identifiers, and parses the result into the frozen
``expense_config.schema`` dataclasses.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; unknown backends/transports are rejected, not defaulted.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  effective configuration (secrets excluded) for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing approver keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import copy
import hashlib
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from expense_config.schema import (
    LEDGER_BACKENDS,
    NOTIFICATION_TRANSPORTS,
    ApproverDef,
    DatabaseSettings,
    ExpenseConfig,
    LedgerSettings,
    NotificationSettings,
    WorkflowSettings,
)

# environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "EXPENSE_DATABASE_URL": ("database", "url"),
    "GOOGLE_SHEET_ID": ("ledger", "spreadsheet_id"),
    "GOOGLE_SERVICE_ACCOUNT_FILE": ("ledger", "service_account_file"),
    "EXPENSE_SMTP_PASSWORD": ("notifications", "smtp_password"),
}

_SECRET_KEYS = frozenset({"smtp_password"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def apply_env_overrides(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return a copy of ``data`` with non-empty env overrides applied."""
    env = os.environ if environ is None else environ
    merged = copy.deepcopy(dict(data))
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var, "").strip()
        if value:
            merged.setdefault(section, {})
            merged[section][key] = value
    return merged


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section {name!r} must be a mapping")
    return value


def parse_workflow(data: dict[str, Any]) -> WorkflowSettings:
    settings = WorkflowSettings(
        max_bill_age_days=int(data.get("max_bill_age_days", 30)),
        external_timeout_seconds=float(data.get("external_timeout_seconds", 10.0)),
        max_workers=int(data.get("max_workers", 8)),
    )
    if settings.max_bill_age_days < 0:
        raise ValueError("workflow.max_bill_age_days must be >= 0")
    if settings.external_timeout_seconds <= 0:
        raise ValueError("workflow.external_timeout_seconds must be > 0")
    if settings.max_workers < 1:
        raise ValueError("workflow.max_workers must be >= 1")
    return settings


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=str(data.get("url", DatabaseSettings.url)),
        echo=bool(data.get("echo", False)),
    )


def parse_ledger(data: dict[str, Any]) -> LedgerSettings:
    backend = str(data.get("backend", LedgerSettings.backend))
    if backend not in LEDGER_BACKENDS:
        raise ValueError(
            f"ledger.backend must be one of {LEDGER_BACKENDS}, got {backend!r}"
        )
    settings = LedgerSettings(
        backend=backend,
        spreadsheet_id=str(data.get("spreadsheet_id") or ""),
        worksheet=str(data.get("worksheet", LedgerSettings.worksheet)),
        service_account_file=data.get("service_account_file"),
        value_input_option=str(
            data.get("value_input_option", LedgerSettings.value_input_option)
        ),
        ensure_header=bool(data.get("ensure_header", True)),
    )
    if settings.backend == "sheets" and not settings.spreadsheet_id:
        raise ValueError("ledger.spreadsheet_id is required for the sheets backend")
    return settings


def parse_notifications(data: dict[str, Any]) -> NotificationSettings:
    transport = str(data.get("transport", NotificationSettings.transport))
    if transport not in NOTIFICATION_TRANSPORTS:
        raise ValueError(
            f"notifications.transport must be one of {NOTIFICATION_TRANSPORTS}, "
            f"got {transport!r}"
        )
    return NotificationSettings(
        transport=transport,
        smtp_host=str(data.get("smtp_host", NotificationSettings.smtp_host)),
        smtp_port=int(data.get("smtp_port", NotificationSettings.smtp_port)),
        smtp_username=data.get("smtp_username"),
        smtp_password=data.get("smtp_password"),
        use_tls=bool(data.get("use_tls", True)),
        sender=str(data.get("sender", NotificationSettings.sender)),
        timeout_seconds=float(data.get("timeout_seconds", 10.0)),
        finance_mailbox=data.get("finance_mailbox"),
        employee_email_domain=data.get("employee_email_domain"),
    )


def parse_approver(data: dict[str, Any]) -> ApproverDef:
    return ApproverDef(
        approver_id=str(data["id"]),
        name=str(data["name"]),
        email=str(data["email"]),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form, with secrets removed."""
    redacted = copy.deepcopy(data)
    for section in redacted.values():
        if isinstance(section, dict):
            for key in _SECRET_KEYS & section.keys():
                section[key] = "<redacted>"
    canonical = json.dumps(redacted, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def build_config(data: Mapping[str, Any]) -> ExpenseConfig:
    """Parse an already-merged config mapping."""
    approvers = data.get("approvers") or []
    if not isinstance(approvers, list):
        raise ValueError("approvers must be a list")
    parsed = tuple(parse_approver(a) for a in approvers)
    ids = [a.approver_id for a in parsed]
    if len(ids) != len(set(ids)):
        raise ValueError("approver ids must be unique")

    return ExpenseConfig(
        workflow=parse_workflow(_section(data, "workflow")),
        database=parse_database(_section(data, "database")),
        ledger=parse_ledger(_section(data, "ledger")),
        notifications=parse_notifications(_section(data, "notifications")),
        approvers=parsed,
        checksum=compute_checksum(dict(data)),
    )


def load_config(
    path: Path,
    environ: Mapping[str, str] | None = None,
) -> ExpenseConfig:
    """Load ``path``, apply env overrides, and parse."""
    return build_config(apply_env_overrides(load_yaml_file(path), environ))
