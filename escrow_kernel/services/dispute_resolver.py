"""
escrow_kernel.services.dispute_resolver -- Dispute workflow.

Responsibility:
    Opens disputes on pending/active milestones, assigns a reviewer,
    resolves with a payout (release, refund or split), and closes withdrawn
    disputes.  Every dispute change rides on a milestone compare-and-swap so
    milestone and dispute state can never disagree.

Architecture position:
    Kernel > Services.  May import from domain/, store/ and sibling services.

Invariants enforced:
    - A disputed milestone leaves ``disputed`` only through resolve() (to a
      terminal state) or close() (back to its prior status).
    - Split shares are validated before any mutation.
    - Payout entries are appended only after the resolving swap commits.

Failure modes:
    - ForbiddenError: actor lacks the role for the step.
    - DisputeAlreadyOpenError: open() on a milestone that is already disputed.
    - InvalidMilestoneTransitionError / InvalidDisputeTransitionError.
    - InvalidResolutionError: split shares negative or not summing to the
      milestone amount.
    - ConflictError: the milestone changed between read and swap.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.custody import CustodyTotals, LedgerEntry, Payout
from escrow_kernel.domain.dispute import (
    Dispute,
    DisputeStatus,
    DisputeUpdate,
    Resolution,
    can_transition_dispute,
)
from escrow_kernel.domain.escrow import Actor, MilestoneChange, PartyRole, TransactionRecord
from escrow_kernel.domain.milestone_machine import (
    MilestoneStatus,
    MilestoneTrigger,
    next_status,
)
from escrow_kernel.domain.policy import EscrowPolicy
from escrow_kernel.exceptions import (
    ConflictError,
    DisputeAlreadyOpenError,
    ForbiddenError,
    InvalidDisputeTransitionError,
    VersionConflictError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.services.custody_ledger import FundCustodyLedger
from escrow_kernel.store.base import LedgerStore

logger = get_logger("services.dispute_resolver")


@dataclass(frozen=True)
class ResolutionOutcome:
    dispute: Dispute
    milestone_status: MilestoneStatus
    version: int
    entries: tuple[LedgerEntry, ...]
    custody: CustodyTotals


class DisputeResolver:
    """Open, review, resolve and close milestone disputes."""

    def __init__(
        self,
        store: LedgerStore,
        custody: FundCustodyLedger,
        policy: EscrowPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._custody = custody
        self._policy = policy or EscrowPolicy()
        self._clock = clock or SystemClock()

    # =========================================================================
    # Open
    # =========================================================================

    def open(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        raised_by: Actor,
        reason: str,
    ) -> Dispute:
        record = self._store.get(transaction_id)
        milestone = record.milestone(milestone_id)

        if record.transaction.party_role(raised_by.actor_id) is None:
            raise ForbiddenError(
                str(raised_by.actor_id),
                "open dispute",
                "only the buyer, seller or broker may open a dispute",
            )

        active = self._store.active_dispute(milestone_id)
        if active is not None:
            raise DisputeAlreadyOpenError(str(milestone_id), str(active.dispute_id))

        target = next_status(str(milestone_id), milestone.status, MilestoneTrigger.OPEN_DISPUTE)
        now = self._clock.now()
        dispute = Dispute(
            dispute_id=uuid4(),
            transaction_id=transaction_id,
            milestone_id=milestone_id,
            raised_by_id=raised_by.actor_id,
            reason=reason,
            status=DisputeStatus.OPEN,
            prior_milestone_status=milestone.status,
            created_at=now,
            updated_at=now,
        )

        self._swap(
            transaction_id,
            milestone_id,
            milestone.version,
            MilestoneChange(changed_at=now, status=target, open_dispute=dispute),
        )

        logger.info(
            "dispute_opened",
            extra={
                "dispute_id": str(dispute.dispute_id),
                "transaction_id": str(transaction_id),
                "milestone_id": str(milestone_id),
                "raised_by_id": str(raised_by.actor_id),
                "prior_status": milestone.status.value,
            },
        )
        return dispute

    # =========================================================================
    # Review
    # =========================================================================

    def begin_review(self, dispute_id: UUID, reviewer: Actor) -> Dispute:
        dispute = self._store.get_dispute(dispute_id)
        record = self._store.get(dispute.transaction_id)

        if not self._may_resolve(record, dispute, reviewer):
            raise ForbiddenError(str(reviewer.actor_id), "review dispute")
        self._require_dispute_transition(dispute, DisputeStatus.UNDER_REVIEW)

        now = self._clock.now()
        milestone = record.milestone(dispute.milestone_id)
        self._swap(
            dispute.transaction_id,
            dispute.milestone_id,
            milestone.version,
            MilestoneChange(
                changed_at=now,
                dispute_update=DisputeUpdate(
                    dispute_id=dispute_id,
                    status=DisputeStatus.UNDER_REVIEW,
                    at=now,
                    assigned_to_id=reviewer.actor_id,
                ),
            ),
        )

        logger.info(
            "dispute_under_review",
            extra={"dispute_id": str(dispute_id), "reviewer_id": str(reviewer.actor_id)},
        )
        return self._store.get_dispute(dispute_id)

    # =========================================================================
    # Resolve
    # =========================================================================

    def resolve(
        self,
        dispute_id: UUID,
        resolver: Actor,
        resolution: Resolution,
    ) -> ResolutionOutcome:
        dispute = self._store.get_dispute(dispute_id)
        record = self._store.get(dispute.transaction_id)
        milestone = record.milestone(dispute.milestone_id)

        if not self._may_resolve(record, dispute, resolver):
            raise ForbiddenError(str(resolver.actor_id), "resolve dispute")
        self._require_dispute_transition(dispute, DisputeStatus.RESOLVED)

        buyer_share, seller_share = resolution.shares(milestone.amount, str(dispute_id))
        outcome = next_status(
            str(milestone.milestone_id),
            milestone.status,
            MilestoneTrigger.RESOLVE_DISPUTE,
            resolution.milestone_outcome(milestone.amount),
        )

        now = self._clock.now()
        version = self._swap(
            dispute.transaction_id,
            milestone.milestone_id,
            milestone.version,
            MilestoneChange(
                changed_at=now,
                status=outcome,
                completed_at=now if outcome == MilestoneStatus.COMPLETED else None,
                dispute_update=DisputeUpdate(
                    dispute_id=dispute_id,
                    status=DisputeStatus.RESOLVED,
                    at=now,
                    resolution=resolution,
                    resolver_id=resolver.actor_id,
                ),
            ),
        )

        entries = self._custody.settle(
            record,
            milestone.milestone_id,
            Payout(buyer_share=buyer_share, seller_share=seller_share),
            resolver.actor_id,
            apply_broker_fee=False,
        )

        logger.info(
            "dispute_resolved",
            extra={
                "dispute_id": str(dispute_id),
                "resolution": resolution.kind.value,
                "buyer_share": str(buyer_share),
                "seller_share": str(seller_share),
                "milestone_status": outcome.value,
            },
        )
        return ResolutionOutcome(
            dispute=self._store.get_dispute(dispute_id),
            milestone_status=outcome,
            version=version,
            entries=tuple(entries),
            custody=self._custody.custody(dispute.transaction_id, milestone.milestone_id),
        )

    # =========================================================================
    # Close (withdrawal)
    # =========================================================================

    def close(self, dispute_id: UUID, actor: Actor) -> Dispute:
        dispute = self._store.get_dispute(dispute_id)
        record = self._store.get(dispute.transaction_id)
        milestone = record.milestone(dispute.milestone_id)

        if not (actor.is_admin or actor.actor_id == dispute.raised_by_id):
            raise ForbiddenError(
                str(actor.actor_id),
                "close dispute",
                "only the raiser or an admin may withdraw a dispute",
            )
        self._require_dispute_transition(dispute, DisputeStatus.CLOSED)

        restored = next_status(
            str(milestone.milestone_id),
            milestone.status,
            MilestoneTrigger.WITHDRAW_DISPUTE,
            dispute.prior_milestone_status,
        )

        now = self._clock.now()
        self._swap(
            dispute.transaction_id,
            milestone.milestone_id,
            milestone.version,
            MilestoneChange(
                changed_at=now,
                status=restored,
                dispute_update=DisputeUpdate(
                    dispute_id=dispute_id,
                    status=DisputeStatus.CLOSED,
                    at=now,
                ),
            ),
        )

        logger.info(
            "dispute_closed",
            extra={
                "dispute_id": str(dispute_id),
                "closed_by_id": str(actor.actor_id),
                "restored_status": restored.value,
            },
        )
        return self._store.get_dispute(dispute_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _may_resolve(self, record: TransactionRecord, dispute: Dispute, actor: Actor) -> bool:
        if actor.is_admin:
            return True
        if not self._policy.broker_may_resolve:
            return False
        if record.transaction.party_role(actor.actor_id) != PartyRole.BROKER:
            return False
        return dispute.assigned_to_id in (None, actor.actor_id)

    @staticmethod
    def _require_dispute_transition(dispute: Dispute, target: DisputeStatus) -> None:
        if not can_transition_dispute(dispute.status, target):
            raise InvalidDisputeTransitionError(
                str(dispute.dispute_id), dispute.status.value, target.value,
            )

    def _swap(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        expected_version: int,
        change: MilestoneChange,
    ) -> int:
        try:
            return self._store.compare_and_swap(
                transaction_id, milestone_id, expected_version, change,
            )
        except VersionConflictError as exc:
            current = self._store.get(transaction_id).milestone(milestone_id)
            raise ConflictError(str(milestone_id), current.status.value) from exc
