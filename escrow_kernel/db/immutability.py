"""
ORM-Level Immutability Enforcement.

===============================================================================
WHAT IS PROTECTED
===============================================================================

Entity            | When Immutable            | Rule
------------------|---------------------------|----------------------------------
LedgerEntryModel  | ALWAYS (from creation)    | Custody ledger is append-only
MilestoneModel    | amount/transaction_id     | Amounts fixed at creation
                  | DELETE always             | Milestones are never removed
TransactionModel  | amount/currency/parties   | Header terms fixed at creation
                  | DELETE always             | Transactions are never removed
DisputeModel      | After resolved/closed     | Terminal disputes are history

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

These listeners guard ORM unit-of-work writes.  The ledger store's
compare-and-swap is a Core ``UPDATE`` that touches only milestone status
columns, which are outside every rule here.

===============================================================================
USAGE
===============================================================================

    from escrow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # create_tables() calls this

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from escrow_kernel.exceptions import ImmutabilityViolationError
from escrow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

MILESTONE_FROZEN_FIELDS = frozenset({"amount", "transaction_id", "position"})
TRANSACTION_FROZEN_FIELDS = frozenset({
    "amount",
    "currency",
    "buyer_id",
    "seller_id",
    "created_by_id",
})
TERMINAL_DISPUTE_STATUSES = frozenset({"resolved", "closed"})


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _changed_fields(target, fields: frozenset[str]) -> list[str]:
    state = inspect(target)
    return sorted(
        name for name in fields if state.attrs[name].history.has_changes()
    )


# =============================================================================
# Ledger entries: always immutable
# =============================================================================


def _check_ledger_entry_immutability(mapper, connection, target):
    raise _blocked(
        "LedgerEntry",
        target.id,
        "UPDATE",
        "Ledger entries are append-only and cannot be modified",
    )


def _check_ledger_entry_delete(mapper, connection, target):
    raise _blocked(
        "LedgerEntry",
        target.id,
        "DELETE",
        "Ledger entries are append-only and cannot be deleted",
    )


# =============================================================================
# Milestones and transactions: terms frozen at creation
# =============================================================================


def _check_milestone_immutability(mapper, connection, target):
    changed = _changed_fields(target, MILESTONE_FROZEN_FIELDS)
    if changed:
        raise _blocked(
            "Milestone",
            target.id,
            "UPDATE",
            f"Fields fixed at creation: {', '.join(changed)}",
        )


def _check_milestone_delete(mapper, connection, target):
    raise _blocked("Milestone", target.id, "DELETE", "Milestones cannot be deleted")


def _check_transaction_immutability(mapper, connection, target):
    changed = _changed_fields(target, TRANSACTION_FROZEN_FIELDS)
    if changed:
        raise _blocked(
            "Transaction",
            target.id,
            "UPDATE",
            f"Fields fixed at creation: {', '.join(changed)}",
        )


def _check_transaction_delete(mapper, connection, target):
    raise _blocked("Transaction", target.id, "DELETE", "Transactions cannot be deleted")


# =============================================================================
# Disputes: frozen once terminal
# =============================================================================


def _check_dispute_immutability(mapper, connection, target):
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous in TERMINAL_DISPUTE_STATUSES:
        raise _blocked(
            "Dispute",
            target.id,
            "UPDATE",
            f"Dispute is {previous} and cannot be modified",
        )


def _check_dispute_delete(mapper, connection, target):
    raise _blocked("Dispute", target.id, "DELETE", "Disputes cannot be deleted")


_LISTENERS = (
    ("LedgerEntryModel", "before_update", _check_ledger_entry_immutability),
    ("LedgerEntryModel", "before_delete", _check_ledger_entry_delete),
    ("MilestoneModel", "before_update", _check_milestone_immutability),
    ("MilestoneModel", "before_delete", _check_milestone_delete),
    ("TransactionModel", "before_update", _check_transaction_immutability),
    ("TransactionModel", "before_delete", _check_transaction_delete),
    ("DisputeModel", "before_update", _check_dispute_immutability),
    ("DisputeModel", "before_delete", _check_dispute_delete),
)


def _listener_targets():
    from escrow_kernel import models

    for model_name, event_name, listener_fn in _LISTENERS:
        yield getattr(models, model_name), event_name, listener_fn


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call after models are imported and before any database operations.
    Registering twice is a no-op.
    """
    for target, event_name, listener_fn in _listener_targets():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate the rules.
    """
    for target, event_name, listener_fn in _listener_targets():
        _safe_remove_listener(target, event_name, listener_fn)
