"""
Dispute domain types (``escrow_kernel.domain.dispute``).

Responsibility
--------------
Pure value objects for the dispute workflow: the dispute lifecycle state
machine, resolution variants, and the immutable dispute record.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  May import only from other
``domain`` modules and ``exceptions``.

Invariants enforced
-------------------
* ``DISPUTE_TRANSITIONS`` defines the only valid status changes;
  ``resolved`` and ``closed`` are terminal.
* A resolution's buyer and seller shares are non-negative and sum
  exactly to the milestone amount (``Resolution.shares``).
* A resolution that pays the seller anything completes the milestone;
  a full refund cancels it.  Released funds therefore always imply a
  ``completed`` milestone.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from escrow_kernel.domain.milestone_machine import MilestoneStatus
from escrow_kernel.domain.values import ZERO
from escrow_kernel.exceptions import InvalidResolutionError


class DisputeStatus(str, Enum):
    """Dispute lifecycle states."""

    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.OPEN: frozenset({
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.UNDER_REVIEW: frozenset({
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    }),
    DisputeStatus.RESOLVED: frozenset(),
    DisputeStatus.CLOSED: frozenset(),
}

ACTIVE_DISPUTE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
})


class ResolutionKind(str, Enum):
    RELEASE_SELLER = "release_seller"
    REFUND_BUYER = "refund_buyer"
    SPLIT = "split"


@dataclass(frozen=True)
class Resolution:
    """How the held funds of a disputed milestone are paid out.

    Build with ``release_seller()``, ``refund_buyer()`` or ``split()``.
    """

    kind: ResolutionKind
    buyer_share: Decimal | None = None
    seller_share: Decimal | None = None

    @classmethod
    def release_seller(cls) -> Resolution:
        return cls(kind=ResolutionKind.RELEASE_SELLER)

    @classmethod
    def refund_buyer(cls) -> Resolution:
        return cls(kind=ResolutionKind.REFUND_BUYER)

    @classmethod
    def split(cls, buyer_share: Decimal, seller_share: Decimal) -> Resolution:
        return cls(
            kind=ResolutionKind.SPLIT,
            buyer_share=Decimal(buyer_share),
            seller_share=Decimal(seller_share),
        )

    def shares(self, milestone_amount: Decimal, dispute_id: str = "") -> tuple[Decimal, Decimal]:
        """Return ``(buyer_share, seller_share)`` for a milestone amount.

        Raises:
            InvalidResolutionError: If split shares are missing, negative,
                or don't sum exactly to ``milestone_amount``.
        """
        if self.kind == ResolutionKind.RELEASE_SELLER:
            return ZERO, milestone_amount
        if self.kind == ResolutionKind.REFUND_BUYER:
            return milestone_amount, ZERO

        if self.buyer_share is None or self.seller_share is None:
            raise InvalidResolutionError(dispute_id, "split requires both shares")
        if self.buyer_share < ZERO or self.seller_share < ZERO:
            raise InvalidResolutionError(dispute_id, "shares must not be negative")
        if self.buyer_share + self.seller_share != milestone_amount:
            raise InvalidResolutionError(
                dispute_id,
                f"shares {self.buyer_share} + {self.seller_share} "
                f"!= milestone amount {milestone_amount}",
            )
        return self.buyer_share, self.seller_share

    def milestone_outcome(self, milestone_amount: Decimal) -> MilestoneStatus:
        """Terminal milestone status this resolution produces."""
        _, seller_share = self.shares(milestone_amount)
        if seller_share > ZERO:
            return MilestoneStatus.COMPLETED
        return MilestoneStatus.CANCELLED

    def to_dict(self) -> dict[str, str | None]:
        return {
            "kind": self.kind.value,
            "buyer_share": str(self.buyer_share) if self.buyer_share is not None else None,
            "seller_share": str(self.seller_share) if self.seller_share is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str | None]) -> Resolution:
        buyer = data.get("buyer_share")
        seller = data.get("seller_share")
        return cls(
            kind=ResolutionKind(data["kind"]),
            buyer_share=Decimal(buyer) if buyer is not None else None,
            seller_share=Decimal(seller) if seller is not None else None,
        )


@dataclass(frozen=True)
class Dispute:
    """Immutable snapshot of a dispute.

    ``prior_milestone_status`` records where the milestone was when the
    dispute opened, so a withdrawal can put it back.
    """

    dispute_id: UUID
    transaction_id: UUID
    milestone_id: UUID
    raised_by_id: UUID
    reason: str
    status: DisputeStatus
    prior_milestone_status: MilestoneStatus
    created_at: datetime
    updated_at: datetime
    assigned_to_id: UUID | None = None
    resolution: Resolution | None = None
    resolver_id: UUID | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def apply(self, update: DisputeUpdate) -> Dispute:
        """Return a copy with ``update`` applied."""
        changes: dict = {"status": update.status, "updated_at": update.at}
        if update.assigned_to_id is not None:
            changes["assigned_to_id"] = update.assigned_to_id
        if update.status == DisputeStatus.RESOLVED:
            changes["resolution"] = update.resolution
            changes["resolver_id"] = update.resolver_id
            changes["resolved_at"] = update.at
        if update.status == DisputeStatus.CLOSED:
            changes["closed_at"] = update.at
        return replace(self, **changes)


@dataclass(frozen=True)
class DisputeUpdate:
    """A dispute status change carried by a milestone compare-and-swap."""

    dispute_id: UUID
    status: DisputeStatus
    at: datetime
    assigned_to_id: UUID | None = None
    resolution: Resolution | None = None
    resolver_id: UUID | None = None


def can_transition_dispute(current: DisputeStatus, target: DisputeStatus) -> bool:
    return target in DISPUTE_TRANSITIONS.get(current, frozenset())
