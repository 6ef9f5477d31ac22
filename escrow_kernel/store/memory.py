"""
Module: escrow_kernel.store.memory
Responsibility: Process-local LedgerStore for tests and single-process use.
Architecture position: Kernel > Store.

Every public call runs under one threading.Lock.  That lock is the store's
own atomicity (what a database row lock gives the SQL adapter); the services
never take it and coordinate only through compare_and_swap.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import replace
from uuid import UUID

from escrow_kernel.domain.custody import LedgerEntry
from escrow_kernel.domain.dispute import Dispute, DisputeStatus
from escrow_kernel.domain.escrow import Milestone, MilestoneChange, Transaction, TransactionRecord
from escrow_kernel.exceptions import (
    DisputeNotFoundError,
    MilestoneNotFoundError,
    TransactionNotFoundError,
    VersionConflictError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.store.base import LedgerStore

logger = get_logger("store.memory")


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed store.  Snapshots are frozen dataclasses, so reads are safe to share."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._transactions: dict[UUID, Transaction] = {}
        self._milestones: dict[UUID, list[Milestone]] = {}
        self._disputes: dict[UUID, Dispute] = {}
        self._entries: list[LedgerEntry] = []
        self._entries_by_key: dict[str, LedgerEntry] = {}

    def create(
        self,
        transaction: Transaction,
        milestones: Sequence[Milestone],
        entries: Sequence[LedgerEntry],
    ) -> UUID:
        with self._lock:
            if transaction.transaction_id in self._transactions:
                raise ValueError(f"Transaction {transaction.transaction_id} already exists")
            self._transactions[transaction.transaction_id] = transaction
            self._milestones[transaction.transaction_id] = sorted(
                milestones, key=lambda m: m.position,
            )
            for entry in entries:
                self._append_locked(entry)
        return transaction.transaction_id

    def get(self, transaction_id: UUID) -> TransactionRecord:
        with self._lock:
            return self._record_locked(transaction_id)

    def get_dispute(self, dispute_id: UUID) -> Dispute:
        with self._lock:
            dispute = self._disputes.get(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    def compare_and_swap(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        expected_version: int,
        change: MilestoneChange,
    ) -> int:
        with self._lock:
            transaction = self._transactions.get(transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(str(transaction_id))

            milestones = self._milestones[transaction_id]
            index = next(
                (i for i, m in enumerate(milestones) if m.milestone_id == milestone_id),
                None,
            )
            if index is None:
                raise MilestoneNotFoundError(str(transaction_id), str(milestone_id))

            current = milestones[index]
            if current.version != expected_version:
                raise VersionConflictError(
                    str(milestone_id), expected_version, current.version,
                )

            if change.dispute_update is not None:
                dispute = self._disputes.get(change.dispute_update.dispute_id)
                if dispute is None:
                    raise DisputeNotFoundError(str(change.dispute_update.dispute_id))
                self._disputes[dispute.dispute_id] = dispute.apply(change.dispute_update)

            if change.open_dispute is not None:
                self._disputes[change.open_dispute.dispute_id] = change.open_dispute

            updated = change.apply(current)
            milestones[index] = updated
            self._transactions[transaction_id] = replace(
                transaction,
                version=transaction.version + 1,
                updated_at=change.changed_at,
            )

        logger.debug(
            "milestone_swapped",
            extra={
                "milestone_id": str(milestone_id),
                "version": updated.version,
                "status": updated.status.value,
            },
        )
        return updated.version

    def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            return self._append_locked(entry)

    def ledger_entries(
        self,
        transaction_id: UUID,
        milestone_id: UUID | None = None,
    ) -> list[LedgerEntry]:
        with self._lock:
            return [
                e for e in self._entries
                if e.transaction_id == transaction_id
                and (milestone_id is None or e.milestone_id == milestone_id)
            ]

    def find_transactions(self, party_id: UUID | None = None) -> list[TransactionRecord]:
        with self._lock:
            return [
                self._record_locked(txn.transaction_id)
                for txn in self._transactions.values()
                if party_id is None or txn.party_role(party_id) is not None
            ]

    def find_disputes(
        self,
        status: DisputeStatus | None = None,
        transaction_id: UUID | None = None,
        assigned_to_id: UUID | None = None,
    ) -> list[Dispute]:
        with self._lock:
            disputes = list(self._disputes.values())
        return [
            d for d in disputes
            if (status is None or d.status == status)
            and (transaction_id is None or d.transaction_id == transaction_id)
            and (assigned_to_id is None or d.assigned_to_id == assigned_to_id)
        ]

    # -- internals (caller holds the lock) ---------------------------------

    def _record_locked(self, transaction_id: UUID) -> TransactionRecord:
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(str(transaction_id))
        return TransactionRecord(
            transaction=transaction,
            milestones=tuple(self._milestones[transaction_id]),
        )

    def _append_locked(self, entry: LedgerEntry) -> LedgerEntry:
        existing = self._entries_by_key.get(entry.idempotency_key)
        if existing is not None:
            return existing
        self._entries.append(entry)
        self._entries_by_key[entry.idempotency_key] = entry
        return entry
