"""
Module: escrow_kernel.selectors.escrow_selector
Responsibility: Read-only views over transactions, milestones, disputes and
    custody for the API layer.
Architecture position: Kernel > Selectors.  Reads through the LedgerStore and
    the custody ledger's replay; never writes.

Invariants enforced:
    - Transaction status is derived from milestone statuses at read time.
    - Custody figures are replayed from ledger entries; no stored balances.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import UUID

from escrow_kernel.domain.custody import CustodyTotals
from escrow_kernel.domain.dispute import Dispute, DisputeStatus
from escrow_kernel.domain.escrow import Milestone, Transaction, TransactionRecord
from escrow_kernel.domain.milestone_machine import TransactionStatus
from escrow_kernel.store.base import LedgerStore

if TYPE_CHECKING:
    from escrow_kernel.services.custody_ledger import FundCustodyLedger


@dataclass(frozen=True)
class TransactionView:
    """A transaction as the API layer sees it."""

    transaction: Transaction
    milestones: tuple[Milestone, ...]
    status: TransactionStatus
    custody: dict[UUID, CustodyTotals]

    @property
    def transaction_id(self) -> UUID:
        return self.transaction.transaction_id

    @property
    def totals(self) -> CustodyTotals:
        """Custody summed over all milestones."""
        total = CustodyTotals()
        for t in self.custody.values():
            total = CustodyTotals(
                held=total.held + t.held,
                released=total.released + t.released,
                refunded=total.refunded + t.refunded,
            )
        return total


class EscrowSelector:
    """Query side of the escrow engine."""

    def __init__(self, store: LedgerStore, custody: FundCustodyLedger):
        self._store = store
        self._custody = custody

    def transaction_view(self, transaction_id: UUID) -> TransactionView:
        return self._view(self._store.get(transaction_id))

    def list_transactions(self, party_id: UUID | None = None) -> list[TransactionView]:
        return [self._view(record) for record in self._store.find_transactions(party_id)]

    def list_disputes(
        self,
        status: DisputeStatus | None = None,
        transaction_id: UUID | None = None,
        assigned_to_id: UUID | None = None,
    ) -> list[Dispute]:
        return self._store.find_disputes(
            status=status,
            transaction_id=transaction_id,
            assigned_to_id=assigned_to_id,
        )

    def _view(self, record: TransactionRecord) -> TransactionView:
        custody = self._custody.custody_by_milestone(record.transaction_id)
        return TransactionView(
            transaction=record.transaction,
            milestones=record.milestones,
            status=record.status,
            custody={
                m.milestone_id: custody.get(m.milestone_id, CustodyTotals())
                for m in record.milestones
            },
        )
