"""
Module: escrow_kernel.models.ledger
Responsibility: Append-only custody ledger rows.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Rows are never updated or deleted (ORM listeners in db/immutability.py).
    - idempotency_key is unique: a retried append cannot double-post.
    - held/released/refunded_after snapshot the milestone's custody totals
      immediately after this entry.

Failure modes:
    - IntegrityError on duplicate idempotency_key (the store reads the
      existing row back instead of failing).
    - ImmutabilityViolationError on ORM update/delete.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UUIDString
from escrow_kernel.db.types import IdempotencyKey, Money, ShortCode

if TYPE_CHECKING:
    from escrow_kernel.domain.custody import LedgerEntry


class LedgerEntryModel(Base):
    """One custody movement for one milestone."""

    __tablename__ = "escrow_ledger_entries"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_escrow_ledger_idempotency_key"),
        CheckConstraint("amount > 0", name="ck_escrow_ledger_positive_amount"),
        CheckConstraint(
            "kind IN ('hold', 'release', 'refund')",
            name="ck_escrow_ledger_valid_kind",
        ),
        Index("ix_escrow_ledger_transaction", "transaction_id", "sequence"),
        Index("ix_escrow_ledger_milestone", "milestone_id", "sequence"),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("escrow_transactions.id"),
        nullable=False,
    )
    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("escrow_milestones.id"),
        nullable=False,
    )
    # Append order within the transaction
    sequence: Mapped[int] = mapped_column(nullable=False)
    kind: Mapped[ShortCode] = mapped_column(nullable=False)
    amount: Mapped[Money] = mapped_column(nullable=False)
    beneficiary: Mapped[ShortCode] = mapped_column(nullable=False)
    beneficiary_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    held_after: Mapped[Money] = mapped_column(nullable=False)
    released_after: Mapped[Money] = mapped_column(nullable=False)
    refunded_after: Mapped[Money] = mapped_column(nullable=False)
    idempotency_key: Mapped[IdempotencyKey] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.kind} {self.amount} -> {self.beneficiary} ({self.idempotency_key})>"

    def to_dto(self) -> LedgerEntry:
        """Convert ORM model to frozen domain DTO."""
        from escrow_kernel.domain.custody import (
            Beneficiary,
            EntryKind,
            LedgerEntry as LedgerEntryDTO,
        )

        return LedgerEntryDTO(
            entry_id=self.id,
            transaction_id=self.transaction_id,
            milestone_id=self.milestone_id,
            kind=EntryKind(self.kind),
            amount=self.amount,
            beneficiary=Beneficiary(self.beneficiary),
            beneficiary_id=self.beneficiary_id,
            actor_id=self.actor_id,
            created_at=self.created_at,
            held_after=self.held_after,
            released_after=self.released_after,
            refunded_after=self.refunded_after,
            idempotency_key=self.idempotency_key,
        )

    @classmethod
    def from_dto(cls, dto: LedgerEntry, sequence: int) -> LedgerEntryModel:
        """Create ORM model from domain DTO at the given append position."""
        return cls(
            id=dto.entry_id,
            transaction_id=dto.transaction_id,
            milestone_id=dto.milestone_id,
            sequence=sequence,
            kind=dto.kind.value,
            amount=dto.amount,
            beneficiary=dto.beneficiary.value,
            beneficiary_id=dto.beneficiary_id,
            actor_id=dto.actor_id,
            created_at=dto.created_at,
            held_after=dto.held_after,
            released_after=dto.released_after,
            refunded_after=dto.refunded_after,
            idempotency_key=dto.idempotency_key,
        )
