"""
escrow_kernel.services.custody_ledger -- Fund custody ledger.

Responsibility:
    Builds and appends the immutable ledger entries that move a milestone's
    funds between held, released and refunded, and replays those entries to
    report and verify custody.

Architecture position:
    Kernel > Services.  May import from domain/ and store/.

Invariants enforced:
    - Conservation: held + released + refunded == milestone amount.  Every
      settlement pays out exactly the held amount (Payout.total is checked).
    - Settlement is appended only after the caller's compare-and-swap has
      committed the milestone's terminal status.
    - Appends are idempotent by entry key, so settle() and repair() can be
      re-run without double-posting.

Failure modes:
    - ValueError if a payout does not sum to the milestone amount (a caller
      bug; resolutions are validated before the swap).
    - TransactionNotFoundError / MilestoneNotFoundError from the store.
"""

from __future__ import annotations

from collections import defaultdict
from uuid import UUID, uuid4

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.custody import (
    Allocation,
    CustodyTotals,
    CustodyViolation,
    LedgerEntry,
    Payout,
    check_milestone,
    hold_allocation,
    ledger_entry_key,
    payout_allocations,
    replay,
)
from escrow_kernel.domain.dispute import DisputeStatus
from escrow_kernel.domain.escrow import Milestone, Transaction, TransactionRecord
from escrow_kernel.domain.milestone_machine import MilestoneStatus, is_terminal
from escrow_kernel.domain.policy import BrokerFeePolicy, EscrowPolicy
from escrow_kernel.domain.values import ZERO
from escrow_kernel.logging_config import get_logger
from escrow_kernel.store.base import LedgerStore

logger = get_logger("services.custody_ledger")


class FundCustodyLedger:
    """Appends and replays custody ledger entries."""

    def __init__(
        self,
        store: LedgerStore,
        policy: EscrowPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or EscrowPolicy()
        self._clock = clock or SystemClock()

    # =========================================================================
    # Entry construction
    # =========================================================================

    def hold_entries(
        self,
        transaction: Transaction,
        milestones: tuple[Milestone, ...] | list[Milestone],
        actor_id: UUID,
    ) -> list[LedgerEntry]:
        """One hold per milestone for a new transaction (buyer deposits upfront)."""
        return [
            self._build_entry(
                transaction,
                milestone,
                hold_allocation(milestone, transaction),
                CustodyTotals(),
                actor_id,
            )
            for milestone in milestones
        ]

    def _build_entry(
        self,
        transaction: Transaction,
        milestone: Milestone,
        allocation: Allocation,
        before: CustodyTotals,
        actor_id: UUID,
    ) -> LedgerEntry:
        after = before.apply(allocation.kind, allocation.amount)
        return LedgerEntry(
            entry_id=uuid4(),
            transaction_id=transaction.transaction_id,
            milestone_id=milestone.milestone_id,
            kind=allocation.kind,
            amount=allocation.amount,
            beneficiary=allocation.beneficiary,
            beneficiary_id=allocation.beneficiary_id,
            actor_id=actor_id,
            created_at=self._clock.now(),
            held_after=after.held,
            released_after=after.released,
            refunded_after=after.refunded,
            idempotency_key=ledger_entry_key(
                transaction.transaction_id,
                milestone.milestone_id,
                allocation.kind,
                allocation.beneficiary,
            ),
        )

    # =========================================================================
    # Settlement
    # =========================================================================

    def settle(
        self,
        record: TransactionRecord,
        milestone_id: UUID,
        payout: Payout,
        actor_id: UUID,
        apply_broker_fee: bool = True,
    ) -> list[LedgerEntry]:
        """Append the entries paying out a milestone that reached a terminal state.

        Call only after the compare-and-swap that made the milestone terminal
        has committed.  Legs already on the ledger are returned as stored.
        Dispute resolutions pass ``apply_broker_fee=False``: the resolver's
        shares are booked exactly as directed.
        """
        milestone = record.milestone(milestone_id)
        if payout.total != milestone.amount:
            raise ValueError(
                f"Payout {payout.total} does not match milestone amount {milestone.amount}"
            )

        fee_policy = self._policy.broker_fee if apply_broker_fee else BrokerFeePolicy()
        allocations = payout_allocations(record.transaction, payout, fee_policy)
        totals = self.custody(record.transaction_id, milestone_id)

        appended: list[LedgerEntry] = []
        for allocation in allocations:
            entry = self._build_entry(
                record.transaction, milestone, allocation, totals, actor_id,
            )
            stored = self._store.append_ledger_entry(entry)
            if stored.entry_id == entry.entry_id:
                totals = entry.totals_after
                logger.info(
                    "ledger_entry_appended",
                    extra={
                        "transaction_id": str(record.transaction_id),
                        "milestone_id": str(milestone_id),
                        "kind": entry.kind.value,
                        "beneficiary": entry.beneficiary.value,
                        "amount": str(entry.amount),
                    },
                )
            else:
                logger.info(
                    "ledger_entry_already_present",
                    extra={"idempotency_key": entry.idempotency_key},
                )
            appended.append(stored)

        return appended

    # =========================================================================
    # Replay and verification
    # =========================================================================

    def custody(self, transaction_id: UUID, milestone_id: UUID) -> CustodyTotals:
        """Custody totals for one milestone, replayed from its entries."""
        return replay(self._store.ledger_entries(transaction_id, milestone_id))

    def custody_by_milestone(self, transaction_id: UUID) -> dict[UUID, CustodyTotals]:
        grouped: dict[UUID, list[LedgerEntry]] = defaultdict(list)
        for entry in self._store.ledger_entries(transaction_id):
            grouped[entry.milestone_id].append(entry)
        return {milestone_id: replay(entries) for milestone_id, entries in grouped.items()}

    def verify(self, transaction_id: UUID) -> list[CustodyViolation]:
        """Compare replayed custody with what each milestone's status requires."""
        record = self._store.get(transaction_id)
        totals = self.custody_by_milestone(transaction_id)

        violations: list[CustodyViolation] = []
        for milestone in record.milestones:
            violations.extend(
                check_milestone(milestone, totals.get(milestone.milestone_id, CustodyTotals()))
            )

        if violations:
            logger.warning(
                "custody_violations_found",
                extra={
                    "transaction_id": str(transaction_id),
                    "violation_count": len(violations),
                    "reasons": [v.reason for v in violations],
                },
            )
        return violations

    def repair(self, transaction_id: UUID, actor_id: UUID) -> list[LedgerEntry]:
        """Append settlement entries missing for terminal milestones.

        Covers a process that committed a terminal compare-and-swap and died
        before its ledger append.  Safe to run repeatedly.
        """
        record = self._store.get(transaction_id)
        totals = self.custody_by_milestone(transaction_id)

        repaired: list[LedgerEntry] = []
        for milestone in record.milestones:
            held = totals.get(milestone.milestone_id, CustodyTotals()).held
            if not is_terminal(milestone.status) or held == ZERO:
                continue

            payout, from_ruling = self._expected_payout(record, milestone)
            logger.warning(
                "custody_repair_started",
                extra={
                    "transaction_id": str(transaction_id),
                    "milestone_id": str(milestone.milestone_id),
                    "status": milestone.status.value,
                    "held": str(held),
                },
            )
            repaired.extend(self.settle(
                record, milestone.milestone_id, payout, actor_id,
                apply_broker_fee=not from_ruling,
            ))

        return repaired

    def _expected_payout(
        self, record: TransactionRecord, milestone: Milestone,
    ) -> tuple[Payout, bool]:
        """Payout owed for a terminal milestone, and whether a dispute ruling set it."""
        resolved = [
            d for d in self._store.find_disputes(
                status=DisputeStatus.RESOLVED,
                transaction_id=record.transaction_id,
            )
            if d.milestone_id == milestone.milestone_id and d.resolution is not None
        ]
        if resolved:
            buyer_share, seller_share = resolved[-1].resolution.shares(
                milestone.amount, str(resolved[-1].dispute_id),
            )
            return Payout(buyer_share=buyer_share, seller_share=seller_share), True

        if milestone.status == MilestoneStatus.COMPLETED:
            return Payout.to_seller(milestone.amount), False
        return Payout.to_buyer(milestone.amount), False
