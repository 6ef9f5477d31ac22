"""
Module: escrow_kernel.store.base
Responsibility: Abstract contract for durable, versioned escrow storage.
Architecture position: Kernel > Store.  Imports domain types only.

Invariants enforced (by every adapter):
    - create() writes a transaction, its milestones and their hold entries
      atomically, or nothing.
    - compare_and_swap() applies a MilestoneChange only when the stored
      milestone version equals expected_version; the dispute insert/update
      carried by the change is part of the same atomic write.  The
      transaction version is bumped with every successful swap.
    - append_ledger_entry() never mutates an existing entry; appending an
      entry whose idempotency_key already exists returns the stored entry.
    - Reads return immutable snapshots.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from uuid import UUID

from escrow_kernel.domain.custody import LedgerEntry
from escrow_kernel.domain.dispute import Dispute, DisputeStatus
from escrow_kernel.domain.escrow import Milestone, MilestoneChange, Transaction, TransactionRecord


class LedgerStore(ABC):
    """Persistence port used by the escrow services."""

    @abstractmethod
    def create(
        self,
        transaction: Transaction,
        milestones: Sequence[Milestone],
        entries: Sequence[LedgerEntry],
    ) -> UUID:
        """Atomically insert a transaction with its milestones and hold entries."""

    @abstractmethod
    def get(self, transaction_id: UUID) -> TransactionRecord:
        """
        Raises:
            TransactionNotFoundError: Unknown transaction id.
        """

    @abstractmethod
    def get_dispute(self, dispute_id: UUID) -> Dispute:
        """
        Raises:
            DisputeNotFoundError: Unknown dispute id.
        """

    @abstractmethod
    def compare_and_swap(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        expected_version: int,
        change: MilestoneChange,
    ) -> int:
        """Apply ``change`` iff the milestone is still at ``expected_version``.

        Returns:
            The milestone's new version.

        Raises:
            TransactionNotFoundError: Unknown transaction id.
            MilestoneNotFoundError: Milestone not in the transaction.
            VersionConflictError: Stored version differs from expected_version.
        """

    @abstractmethod
    def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, or return the stored one with the same key."""

    @abstractmethod
    def ledger_entries(
        self,
        transaction_id: UUID,
        milestone_id: UUID | None = None,
    ) -> list[LedgerEntry]:
        """Entries in append order, optionally for one milestone."""

    @abstractmethod
    def find_transactions(self, party_id: UUID | None = None) -> list[TransactionRecord]:
        """Transactions where ``party_id`` is buyer, seller or broker (all if None)."""

    @abstractmethod
    def find_disputes(
        self,
        status: DisputeStatus | None = None,
        transaction_id: UUID | None = None,
        assigned_to_id: UUID | None = None,
    ) -> list[Dispute]:
        """Disputes matching every supplied filter, oldest first."""

    def active_dispute(self, milestone_id: UUID) -> Dispute | None:
        """The open or under-review dispute on a milestone, if any."""
        for dispute in self.find_disputes():
            if dispute.milestone_id == milestone_id and dispute.is_active:
                return dispute
        return None
