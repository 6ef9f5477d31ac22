"""
Milestone state machine (``escrow_kernel.domain.milestone_machine``).

Responsibility
--------------
Pure logic governing legal status transitions for a milestone, and the
derived status of the transaction that contains it.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``services/``, ``store/``, or outer layers.

Invariants enforced
-------------------
* ``MILESTONE_TRANSITIONS`` is the only graph of legal status changes.
  Terminal states (``completed``, ``cancelled``) have no outgoing edges.
* Each edge is reachable only through the trigger that owns it
  (``MILESTONE_TRIGGERS``): approval is the only way into ``completed``
  from ``active``; dispute resolution is the only way out of ``disputed``
  into a terminal state.
* Transaction status is a pure reduction over milestone statuses
  (``derive_transaction_status``); it is never stored.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from escrow_kernel.exceptions import InvalidMilestoneTransitionError


class MilestoneStatus(str, Enum):
    """Milestone lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    """Derived transaction status."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


MILESTONE_TRANSITIONS: dict[MilestoneStatus, frozenset[MilestoneStatus]] = {
    MilestoneStatus.PENDING: frozenset({
        MilestoneStatus.ACTIVE,
        MilestoneStatus.DISPUTED,
        MilestoneStatus.CANCELLED,
    }),
    MilestoneStatus.ACTIVE: frozenset({
        MilestoneStatus.COMPLETED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.DISPUTED: frozenset({
        MilestoneStatus.COMPLETED,
        MilestoneStatus.CANCELLED,
        # Withdrawn dispute restores the pre-dispute status
        MilestoneStatus.PENDING,
        MilestoneStatus.ACTIVE,
    }),
    MilestoneStatus.COMPLETED: frozenset(),
    MilestoneStatus.CANCELLED: frozenset(),
}

TERMINAL_MILESTONE_STATUSES: frozenset[MilestoneStatus] = frozenset({
    MilestoneStatus.COMPLETED,
    MilestoneStatus.CANCELLED,
})


class MilestoneTrigger(str, Enum):
    """Events that move a milestone."""

    START = "start"
    APPROVE = "approve"
    OPEN_DISPUTE = "open_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    WITHDRAW_DISPUTE = "withdraw_dispute"
    MUTUAL_CANCEL = "mutual_cancel"


@dataclass(frozen=True)
class TriggerRule:
    """Source and target states a trigger may connect."""

    sources: frozenset[MilestoneStatus]
    targets: frozenset[MilestoneStatus]


MILESTONE_TRIGGERS: dict[MilestoneTrigger, TriggerRule] = {
    MilestoneTrigger.START: TriggerRule(
        sources=frozenset({MilestoneStatus.PENDING}),
        targets=frozenset({MilestoneStatus.ACTIVE}),
    ),
    MilestoneTrigger.APPROVE: TriggerRule(
        sources=frozenset({MilestoneStatus.ACTIVE}),
        targets=frozenset({MilestoneStatus.COMPLETED}),
    ),
    MilestoneTrigger.OPEN_DISPUTE: TriggerRule(
        sources=frozenset({MilestoneStatus.PENDING, MilestoneStatus.ACTIVE}),
        targets=frozenset({MilestoneStatus.DISPUTED}),
    ),
    MilestoneTrigger.RESOLVE_DISPUTE: TriggerRule(
        sources=frozenset({MilestoneStatus.DISPUTED}),
        targets=frozenset({MilestoneStatus.COMPLETED, MilestoneStatus.CANCELLED}),
    ),
    MilestoneTrigger.WITHDRAW_DISPUTE: TriggerRule(
        sources=frozenset({MilestoneStatus.DISPUTED}),
        targets=frozenset({MilestoneStatus.PENDING, MilestoneStatus.ACTIVE}),
    ),
    MilestoneTrigger.MUTUAL_CANCEL: TriggerRule(
        sources=frozenset({MilestoneStatus.PENDING}),
        targets=frozenset({MilestoneStatus.CANCELLED}),
    ),
}


def can_transition(current: MilestoneStatus, target: MilestoneStatus) -> bool:
    """True if ``current -> target`` is an edge of the milestone graph."""
    return target in MILESTONE_TRANSITIONS.get(current, frozenset())


def require_transition(
    milestone_id: str,
    current: MilestoneStatus,
    target: MilestoneStatus,
) -> None:
    """Raise InvalidMilestoneTransitionError unless ``current -> target`` is legal."""
    if not can_transition(current, target):
        raise InvalidMilestoneTransitionError(milestone_id, current.value, target.value)


def is_terminal(status: MilestoneStatus) -> bool:
    return status in TERMINAL_MILESTONE_STATUSES


def next_status(
    milestone_id: str,
    current: MilestoneStatus,
    trigger: MilestoneTrigger,
    target: MilestoneStatus | None = None,
) -> MilestoneStatus:
    """Resolve the status a trigger moves a milestone to.

    ``target`` is required when the trigger has more than one legal
    destination (dispute resolution and withdrawal).

    Raises:
        InvalidMilestoneTransitionError: If the trigger does not apply to
            ``current`` or ``target`` is not one of its destinations.
    """
    rule = MILESTONE_TRIGGERS[trigger]

    if target is None:
        if len(rule.targets) != 1:
            raise ValueError(f"Trigger {trigger.value} needs an explicit target")
        (target,) = rule.targets

    if (
        current not in rule.sources
        or target not in rule.targets
        or not can_transition(current, target)
    ):
        raise InvalidMilestoneTransitionError(
            milestone_id, current.value, target.value,
        )
    return target


def derive_transaction_status(
    statuses: Iterable[MilestoneStatus],
) -> TransactionStatus:
    """Reduce milestone statuses to the transaction status.

    Precedence: any disputed wins; all cancelled is cancelled; all terminal
    is completed; nothing started yet is pending; anything else is active.
    """
    statuses = tuple(statuses)

    if any(s == MilestoneStatus.DISPUTED for s in statuses):
        return TransactionStatus.DISPUTED
    if statuses and all(s == MilestoneStatus.CANCELLED for s in statuses):
        return TransactionStatus.CANCELLED
    if statuses and all(s in TERMINAL_MILESTONE_STATUSES for s in statuses):
        return TransactionStatus.COMPLETED
    if not any(
        s in (MilestoneStatus.ACTIVE, MilestoneStatus.COMPLETED) for s in statuses
    ):
        return TransactionStatus.PENDING
    return TransactionStatus.ACTIVE
