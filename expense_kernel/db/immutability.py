"""
Module: expense_kernel.db.immutability
Responsibility: ORM-level enforcement of the append-only decision ledger.
Architecture position: Kernel > DB.

    [before_update event] --> _check_ledger_record_update() --> ImmutabilityViolationError
    [before_delete event] --> _check_ledger_record_delete() --> ImmutabilityViolationError

Invariants enforced:
    - A LedgerRecordModel row is written once and never modified or removed
      through the ORM.

Failure modes:
    - ImmutabilityViolationError raised from flush; the caller's
      session_scope() rolls the transaction back.
"""

from sqlalchemy import event

from expense_kernel.exceptions import ImmutabilityViolationError
from expense_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_ledger_record_update(mapper, connection, target):
    """Prevent any updates to ledger rows."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "LedgerRecord",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="LedgerRecord",
        entity_id=str(target.id),
        reason="Ledger records are append-only and cannot be modified",
    )


def _check_ledger_record_delete(mapper, connection, target):
    """Prevent deletion of ledger rows."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "LedgerRecord",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="LedgerRecord",
        entity_id=str(target.id),
        reason="Ledger records cannot be deleted",
    )


def register_immutability_listeners() -> None:
    """Register ledger immutability listeners (safe to call repeatedly)."""
    from expense_kernel.models.ledger_record import LedgerRecordModel

    if not event.contains(LedgerRecordModel, "before_update", _check_ledger_record_update):
        event.listen(LedgerRecordModel, "before_update", _check_ledger_record_update)
    if not event.contains(LedgerRecordModel, "before_delete", _check_ledger_record_delete):
        event.listen(LedgerRecordModel, "before_delete", _check_ledger_record_delete)
