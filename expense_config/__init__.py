"""
expense_config -- single public entrypoint for workflow configuration.

Responsibility:
    ``get_active_config()`` is the one way services obtain configuration.
    It picks the YAML file (explicit path, ``EXPENSE_CONFIG``, or the
    packaged default set), applies environment overrides, and returns a
    frozen ``ExpenseConfig``.

Architecture position:
    Configuration layer.  Sits beside ``expense_kernel``; the kernel's
    domain and services never import from here -- only the service factory
    does.

Failure modes:
    - ``FileNotFoundError`` -- the selected file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from expense_config.loader import load_config
from expense_config.schema import ExpenseConfig

_logger = logging.getLogger("expense_kernel.config")

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ExpenseConfig:
    """The public configuration entrypoint."""
    env = os.environ if environ is None else environ
    selected = path or Path(env.get("EXPENSE_CONFIG") or _DEFAULT_CONFIG_FILE)
    config = load_config(selected, env)
    _logger.info(
        "expense_config_loaded",
        extra={
            "config_path": str(selected),
            "checksum": config.checksum,
            "ledger_backend": config.ledger.backend,
            "notification_transport": config.notifications.transport,
            "approver_count": len(config.approvers),
        },
    )
    return config


__all__ = ["ExpenseConfig", "get_active_config"]
