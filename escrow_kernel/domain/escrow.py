"""
Escrow domain types (``escrow_kernel.domain.escrow``).

Responsibility
--------------
Immutable snapshots of transactions and milestones, creation inputs,
the authenticated actor, and the ``MilestoneChange`` carried by the
ledger store's compare-and-swap.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects, ZERO I/O.

Invariants enforced
-------------------
* Amounts: ``validate_draft`` rejects drafts with no milestones, non-positive
  amounts, or milestone amounts that don't sum to the transaction
  amount within the policy tolerance.  Nothing is persisted for a
  rejected draft.
* Status: ``TransactionRecord.status`` is computed from milestone statuses
  on every read.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from escrow_kernel.domain.dispute import Dispute, DisputeUpdate
from escrow_kernel.domain.milestone_machine import (
    MilestoneStatus,
    TransactionStatus,
    derive_transaction_status,
)
from escrow_kernel.domain.values import (
    MINOR_UNIT,
    ZERO,
    amounts_match,
    to_amount,
    validate_currency,
)
from escrow_kernel.exceptions import (
    AmountMismatchError,
    DuplicatePartyError,
    EmptyMilestonesError,
    MilestoneNotFoundError,
    NonPositiveAmountError,
)

ADMIN_ROLE = "admin"


class PartyRole(str, Enum):
    """An actor's role relative to one transaction."""

    BUYER = "buyer"
    SELLER = "seller"
    BROKER = "broker"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, as supplied by the identity provider.

    ``roles`` holds platform-wide roles (``"admin"``); transaction roles
    (buyer/seller/broker) are derived from the transaction's party ids.
    """

    actor_id: UUID
    roles: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


# =========================================================================
# Creation inputs
# =========================================================================


@dataclass(frozen=True)
class MilestoneSpec:
    title: str
    amount: Decimal
    due_date: datetime | None = None
    description: str = ""


@dataclass(frozen=True)
class TransactionDraft:
    """Everything needed to open an escrow transaction."""

    buyer_id: UUID
    seller_id: UUID
    amount: Decimal
    currency: str
    milestones: tuple[MilestoneSpec, ...]
    broker_id: UUID | None = None
    title: str = ""
    description: str = ""
    transaction_type: str = ""
    due_date: datetime | None = None


def validate_draft(
    draft: TransactionDraft,
    tolerance: Decimal = MINOR_UNIT,
) -> TransactionDraft:
    """Check a draft and return it with normalized amounts.

    Milestone amounts must sum to the transaction amount within *tolerance*.

    Raises:
        EmptyMilestonesError: No milestones.
        NonPositiveAmountError: Transaction or milestone amount <= 0.
        AmountMismatchError: Milestone sum differs from the transaction
            amount by ``tolerance`` or more.
        InvalidCurrencyError: Unknown currency code.
        DuplicatePartyError: Buyer, seller and broker are not pairwise distinct.
        ValidationError: Float or non-numeric amounts.
    """
    if draft.buyer_id == draft.seller_id:
        raise DuplicatePartyError(str(draft.buyer_id), ("buyer", "seller"))
    if draft.broker_id is not None:
        for role, party_id in (("buyer", draft.buyer_id), ("seller", draft.seller_id)):
            if draft.broker_id == party_id:
                raise DuplicatePartyError(str(party_id), (role, "broker"))

    if not draft.milestones:
        raise EmptyMilestonesError()

    amount = to_amount(draft.amount)
    if amount <= ZERO:
        raise NonPositiveAmountError("transaction amount", amount)

    milestones = []
    for index, spec in enumerate(draft.milestones):
        milestone_amount = to_amount(spec.amount)
        if milestone_amount <= ZERO:
            raise NonPositiveAmountError(f"milestone[{index}] amount", milestone_amount)
        milestones.append(
            MilestoneSpec(
                title=spec.title,
                amount=milestone_amount,
                due_date=spec.due_date,
                description=spec.description,
            )
        )

    total = sum((m.amount for m in milestones), ZERO)
    if not amounts_match(total, amount, tolerance):
        raise AmountMismatchError(amount, total)

    return TransactionDraft(
        buyer_id=draft.buyer_id,
        seller_id=draft.seller_id,
        amount=amount,
        currency=validate_currency(draft.currency),
        milestones=tuple(milestones),
        broker_id=draft.broker_id,
        title=draft.title,
        description=draft.description,
        transaction_type=draft.transaction_type,
        due_date=draft.due_date,
    )


# =========================================================================
# Stored snapshots
# =========================================================================


@dataclass(frozen=True)
class Transaction:
    """Transaction header.  Status is not stored; see ``TransactionRecord``."""

    transaction_id: UUID
    buyer_id: UUID
    seller_id: UUID
    amount: Decimal
    currency: str
    created_by_id: UUID
    created_at: datetime
    updated_at: datetime
    version: int = 1
    broker_id: UUID | None = None
    title: str = ""
    description: str = ""
    transaction_type: str = ""
    due_date: datetime | None = None

    def party_role(self, actor_id: UUID) -> PartyRole | None:
        """The actor's role in this transaction, if any."""
        if actor_id == self.buyer_id:
            return PartyRole.BUYER
        if actor_id == self.seller_id:
            return PartyRole.SELLER
        if self.broker_id is not None and actor_id == self.broker_id:
            return PartyRole.BROKER
        return None

    def party_id(self, role: PartyRole) -> UUID | None:
        return {
            PartyRole.BUYER: self.buyer_id,
            PartyRole.SELLER: self.seller_id,
            PartyRole.BROKER: self.broker_id,
        }[role]


@dataclass(frozen=True)
class Milestone:
    milestone_id: UUID
    transaction_id: UUID
    position: int
    title: str
    amount: Decimal
    status: MilestoneStatus
    created_at: datetime
    updated_at: datetime
    version: int = 1
    description: str = ""
    due_date: datetime | None = None
    completed_at: datetime | None = None
    cancel_consents: frozenset[PartyRole] = frozenset()


@dataclass(frozen=True)
class TransactionRecord:
    """A transaction with its milestones, as read from the store."""

    transaction: Transaction
    milestones: tuple[Milestone, ...]

    @property
    def transaction_id(self) -> UUID:
        return self.transaction.transaction_id

    @property
    def status(self) -> TransactionStatus:
        return derive_transaction_status(m.status for m in self.milestones)

    def milestone(self, milestone_id: UUID) -> Milestone:
        for m in self.milestones:
            if m.milestone_id == milestone_id:
                return m
        raise MilestoneNotFoundError(str(self.transaction_id), str(milestone_id))


# =========================================================================
# Compare-and-swap payload
# =========================================================================


@dataclass(frozen=True)
class MilestoneChange:
    """Everything one compare-and-swap writes for a milestone.

    ``None`` fields are left untouched.  ``open_dispute`` and
    ``dispute_update`` are written in the same atomic step as the
    milestone fields.
    """

    changed_at: datetime
    status: MilestoneStatus | None = None
    completed_at: datetime | None = None
    cancel_consents: frozenset[PartyRole] | None = None
    open_dispute: Dispute | None = None
    dispute_update: DisputeUpdate | None = None

    def apply(self, milestone: Milestone) -> Milestone:
        """Return ``milestone`` with this change applied and version bumped."""
        changes: dict = {
            "version": milestone.version + 1,
            "updated_at": self.changed_at,
        }
        if self.status is not None:
            changes["status"] = self.status
        if self.completed_at is not None and milestone.completed_at is None:
            changes["completed_at"] = self.completed_at
        if self.cancel_consents is not None:
            changes["cancel_consents"] = self.cancel_consents
        return replace(milestone, **changes)


@dataclass(frozen=True)
class CreatedTransaction:
    transaction_id: UUID
    version: int
    milestone_ids: tuple[UUID, ...] = field(default_factory=tuple)
