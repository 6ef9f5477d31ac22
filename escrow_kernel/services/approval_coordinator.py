"""
escrow_kernel.services.approval_coordinator -- At-most-once milestone release.

Responsibility:
    Moves an ``active`` milestone to ``completed`` and releases its held
    funds exactly once, however many approvals race for it.

Architecture position:
    Kernel > Services.  May import from domain/, store/ and sibling services.

Invariants enforced:
    - Only the approval whose compare-and-swap commits appends the release.
    - Approving a milestone that is already ``completed`` is a success with
      no ledger write (idempotent).
    - A lost race against anything other than completion is a
      ConflictError; the coordinator never retries.

Failure modes:
    - ForbiddenError: approver is not the buyer (or, when the policy allows
      delegated approval, the broker).
    - InvalidMilestoneTransitionError: milestone is pending, disputed or
      cancelled.
    - ConflictError: the milestone moved elsewhere between read and swap.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.custody import LedgerEntry, Payout
from escrow_kernel.domain.escrow import Actor, MilestoneChange, PartyRole, TransactionRecord
from escrow_kernel.domain.milestone_machine import (
    MilestoneStatus,
    MilestoneTrigger,
    next_status,
)
from escrow_kernel.domain.policy import EscrowPolicy
from escrow_kernel.exceptions import ConflictError, ForbiddenError, VersionConflictError
from escrow_kernel.logging_config import get_logger
from escrow_kernel.services.custody_ledger import FundCustodyLedger
from escrow_kernel.store.base import LedgerStore

logger = get_logger("services.approval_coordinator")


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of an approval.

    ``released`` is True only for the call that committed the completion
    and appended the release entries.
    """

    transaction_id: UUID
    milestone_id: UUID
    version: int
    released: bool
    entries: tuple[LedgerEntry, ...] = ()


class ApprovalCoordinator:
    """Serializes approvals per milestone through the store's compare-and-swap."""

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

    def approve(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        approver: Actor,
        expected_version: int | None = None,
    ) -> ApprovalOutcome:
        record = self._store.get(transaction_id)
        milestone = record.milestone(milestone_id)
        self._authorize(record, approver)

        if milestone.status == MilestoneStatus.COMPLETED:
            return self._idempotent(record, milestone_id, milestone.version, approver)

        target = next_status(str(milestone_id), milestone.status, MilestoneTrigger.APPROVE)
        version = expected_version if expected_version is not None else milestone.version
        now = self._clock.now()

        try:
            new_version = self._store.compare_and_swap(
                transaction_id,
                milestone_id,
                version,
                MilestoneChange(changed_at=now, status=target, completed_at=now),
            )
        except VersionConflictError as exc:
            current = self._store.get(transaction_id).milestone(milestone_id)
            if current.status == MilestoneStatus.COMPLETED:
                return self._idempotent(record, milestone_id, current.version, approver)
            logger.info(
                "approval_conflict",
                extra={
                    "milestone_id": str(milestone_id),
                    "expected_version": exc.expected_version,
                    "actual_version": exc.actual_version,
                    "observed_status": current.status.value,
                },
            )
            raise ConflictError(str(milestone_id), current.status.value) from exc

        entries = self._custody.settle(
            record, milestone_id, Payout.to_seller(milestone.amount), approver.actor_id,
        )

        logger.info(
            "milestone_approved",
            extra={
                "transaction_id": str(transaction_id),
                "milestone_id": str(milestone_id),
                "approver_id": str(approver.actor_id),
                "version": new_version,
                "amount": str(milestone.amount),
            },
        )
        return ApprovalOutcome(
            transaction_id=transaction_id,
            milestone_id=milestone_id,
            version=new_version,
            released=True,
            entries=tuple(entries),
        )

    def _authorize(self, record: TransactionRecord, approver: Actor) -> None:
        role = record.transaction.party_role(approver.actor_id)
        if role == PartyRole.BUYER:
            return
        if role == PartyRole.BROKER and self._policy.broker_may_approve:
            return
        raise ForbiddenError(
            str(approver.actor_id),
            "approve milestone",
            "only the buyer may approve" if not self._policy.broker_may_approve
            else "only the buyer or broker may approve",
        )

    @staticmethod
    def _idempotent(
        record: TransactionRecord,
        milestone_id: UUID,
        version: int,
        approver: Actor,
    ) -> ApprovalOutcome:
        logger.info(
            "approval_idempotent",
            extra={
                "milestone_id": str(milestone_id),
                "approver_id": str(approver.actor_id),
                "version": version,
            },
        )
        return ApprovalOutcome(
            transaction_id=record.transaction_id,
            milestone_id=milestone_id,
            version=version,
            released=False,
        )
