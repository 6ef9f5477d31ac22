"""
Custody domain (``escrow_kernel.domain.custody``).

Responsibility
--------------
Immutable ledger entries, replay of entries into custody totals, the
status-derived custody expectation for a milestone, and planning of the
entries each settlement appends.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  The custody ledger service
(``services/custody_ledger.py``) persists what this module plans.

Invariants enforced
-------------------
* Conservation: for every milestone ``held + released + refunded ==
  amount``.  ``CustodyTotals.apply`` moves value out of ``held`` only.
* ``released > 0`` implies the milestone is ``completed``.
* Every planned settlement pays out exactly the milestone amount;
  zero-amount legs are dropped.
* Each entry carries an idempotency key (transaction, milestone, kind,
  beneficiary); a milestone can therefore hold at most one entry per
  key, and a second release to the same beneficiary is impossible.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from escrow_kernel.domain.escrow import Milestone, Transaction
from escrow_kernel.domain.milestone_machine import MilestoneStatus
from escrow_kernel.domain.policy import BrokerFeePolicy
from escrow_kernel.domain.values import ZERO


class EntryKind(str, Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class Beneficiary(str, Enum):
    """Who an entry credits.  Holds credit the escrow account."""

    ESCROW = "escrow"
    BUYER = "buyer"
    SELLER = "seller"
    BROKER = "broker"


def ledger_entry_key(
    transaction_id: UUID,
    milestone_id: UUID,
    kind: EntryKind,
    beneficiary: Beneficiary,
) -> str:
    """Idempotency key for a ledger entry.

    Format: transaction_id:milestone_id:kind:beneficiary
    """
    return f"{transaction_id}:{milestone_id}:{kind.value}:{beneficiary.value}"


@dataclass(frozen=True)
class CustodyTotals:
    held: Decimal = ZERO
    released: Decimal = ZERO
    refunded: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.held + self.released + self.refunded

    def apply(self, kind: EntryKind, amount: Decimal) -> CustodyTotals:
        if kind == EntryKind.HOLD:
            return CustodyTotals(self.held + amount, self.released, self.refunded)
        if kind == EntryKind.RELEASE:
            return CustodyTotals(self.held - amount, self.released + amount, self.refunded)
        return CustodyTotals(self.held - amount, self.released, self.refunded + amount)


@dataclass(frozen=True)
class LedgerEntry:
    """Append-only custody record.  Never mutated or deleted."""

    entry_id: UUID
    transaction_id: UUID
    milestone_id: UUID
    kind: EntryKind
    amount: Decimal
    beneficiary: Beneficiary
    actor_id: UUID
    created_at: datetime
    held_after: Decimal
    released_after: Decimal
    refunded_after: Decimal
    idempotency_key: str
    beneficiary_id: UUID | None = None

    @property
    def totals_after(self) -> CustodyTotals:
        return CustodyTotals(self.held_after, self.released_after, self.refunded_after)


def replay(entries: Iterable[LedgerEntry]) -> CustodyTotals:
    """Fold entries (in append order) into custody totals."""
    totals = CustodyTotals()
    for entry in entries:
        totals = totals.apply(entry.kind, entry.amount)
    return totals


@dataclass(frozen=True)
class Payout:
    """How a terminal milestone's held funds are divided."""

    buyer_share: Decimal
    seller_share: Decimal

    @classmethod
    def to_seller(cls, amount: Decimal) -> Payout:
        return cls(buyer_share=ZERO, seller_share=amount)

    @classmethod
    def to_buyer(cls, amount: Decimal) -> Payout:
        return cls(buyer_share=amount, seller_share=ZERO)

    @property
    def total(self) -> Decimal:
        return self.buyer_share + self.seller_share


@dataclass(frozen=True)
class Allocation:
    """One planned ledger leg."""

    kind: EntryKind
    beneficiary: Beneficiary
    amount: Decimal
    beneficiary_id: UUID | None = None


def hold_allocation(milestone: Milestone, transaction: Transaction) -> Allocation:
    """Full milestone amount escrowed on behalf of the buyer."""
    return Allocation(
        kind=EntryKind.HOLD,
        beneficiary=Beneficiary.ESCROW,
        amount=milestone.amount,
        beneficiary_id=transaction.buyer_id,
    )


def payout_allocations(
    transaction: Transaction,
    payout: Payout,
    fee_policy: BrokerFeePolicy,
) -> tuple[Allocation, ...]:
    """Plan the legs paying out a milestone's held funds.

    The broker fee, when a broker is assigned and the rate is non-zero,
    comes out of the seller's share.  Zero-amount legs are omitted.
    """
    buyer_share, seller_share = payout.buyer_share, payout.seller_share
    legs: list[Allocation] = []

    if buyer_share > ZERO:
        legs.append(Allocation(
            kind=EntryKind.REFUND,
            beneficiary=Beneficiary.BUYER,
            amount=buyer_share,
            beneficiary_id=transaction.buyer_id,
        ))

    if seller_share > ZERO:
        seller_amount, broker_fee = seller_share, ZERO
        if transaction.broker_id is not None:
            seller_amount, broker_fee = fee_policy.split(seller_share)
        if seller_amount > ZERO:
            legs.append(Allocation(
                kind=EntryKind.RELEASE,
                beneficiary=Beneficiary.SELLER,
                amount=seller_amount,
                beneficiary_id=transaction.seller_id,
            ))
        if broker_fee > ZERO:
            legs.append(Allocation(
                kind=EntryKind.RELEASE,
                beneficiary=Beneficiary.BROKER,
                amount=broker_fee,
                beneficiary_id=transaction.broker_id,
            ))

    return tuple(legs)


@dataclass(frozen=True)
class CustodyViolation:
    """A milestone whose replayed custody disagrees with its status."""

    transaction_id: UUID
    milestone_id: UUID
    status: MilestoneStatus
    reason: str
    totals: CustodyTotals


def check_milestone(
    milestone: Milestone,
    totals: CustodyTotals,
) -> list[CustodyViolation]:
    """Compare replayed custody with the milestone's status expectation.

    Non-terminal milestones hold the full amount.  Completed milestones
    hold nothing and have released something.  Cancelled milestones hold
    nothing and released nothing.
    """
    problems: list[str] = []

    if totals.total != milestone.amount:
        problems.append(
            f"conservation broken: {totals.total} accounted, amount {milestone.amount}"
        )
    if totals.held < ZERO or totals.released < ZERO or totals.refunded < ZERO:
        problems.append("negative custody bucket")

    if milestone.status in (
        MilestoneStatus.PENDING,
        MilestoneStatus.ACTIVE,
        MilestoneStatus.DISPUTED,
    ):
        if totals.held != milestone.amount:
            problems.append(f"expected {milestone.amount} held, found {totals.held}")
    elif milestone.status == MilestoneStatus.COMPLETED:
        if totals.held != ZERO:
            problems.append(f"completed milestone still holds {totals.held}")
        if totals.released <= ZERO:
            problems.append("completed milestone has no release")
    elif milestone.status == MilestoneStatus.CANCELLED:
        if totals.held != ZERO:
            problems.append(f"cancelled milestone still holds {totals.held}")
        if totals.released != ZERO:
            problems.append(f"cancelled milestone released {totals.released}")

    return [
        CustodyViolation(
            transaction_id=milestone.transaction_id,
            milestone_id=milestone.milestone_id,
            status=milestone.status,
            reason=reason,
            totals=totals,
        )
        for reason in problems
    ]
