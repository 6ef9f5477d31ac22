"""
Module: escrow_kernel.models.escrow
Responsibility: ORM persistence for escrow transactions and their milestones.
Architecture position: Kernel > Models.  May import from db/ only (domain DTOs
    are imported lazily inside to_dto()).

Invariants enforced:
    AMOUNTS -- Milestone amounts are written once, at creation, in the same
               database transaction as the header; db/immutability.py blocks
               ORM updates to amount columns afterwards.
    STATUS  -- No status column on the transaction header: status is derived
               from milestone statuses on read.
    CAS     -- MilestoneModel.version is the fencing token for the store's
               compare-and-swap (UPDATE ... WHERE version = :expected).

Failure modes:
    - IntegrityError on duplicate (transaction_id, position).
    - ImmutabilityViolationError on ORM update of an amount column.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import Base, UUIDString
from escrow_kernel.db.types import Currency, LongText, Money, ShortCode

if TYPE_CHECKING:
    from escrow_kernel.domain.escrow import Milestone, Transaction, TransactionRecord


class TransactionModel(Base):
    """Escrow transaction header.

    Contract:
        Created together with all its milestones.  ``version`` is bumped
        (unfenced) whenever any milestone changes; it is informational,
        the fencing token is the milestone version.
    """

    __tablename__ = "escrow_transactions"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_escrow_transactions_positive_amount"),
        Index("ix_escrow_transactions_buyer", "buyer_id"),
        Index("ix_escrow_transactions_seller", "seller_id"),
        Index("ix_escrow_transactions_broker", "broker_id"),
    )

    buyer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    seller_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    broker_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    title: Mapped[LongText] = mapped_column(default="", nullable=False)
    description: Mapped[LongText] = mapped_column(default="", nullable=False)
    transaction_type: Mapped[ShortCode] = mapped_column(default="", nullable=False)
    amount: Mapped[Money] = mapped_column(nullable=False)
    currency: Mapped[Currency] = mapped_column(nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    milestones: Mapped[list[MilestoneModel]] = relationship(
        "MilestoneModel",
        back_populates="transaction",
        order_by="MilestoneModel.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<EscrowTransaction {self.id} amount={self.amount} {self.currency} v{self.version}>"

    def to_dto(self) -> Transaction:
        """Convert ORM model to frozen domain DTO."""
        from escrow_kernel.domain.escrow import Transaction as TransactionDTO

        return TransactionDTO(
            transaction_id=self.id,
            buyer_id=self.buyer_id,
            seller_id=self.seller_id,
            broker_id=self.broker_id,
            amount=self.amount,
            currency=self.currency,
            created_by_id=self.created_by_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
            title=self.title,
            description=self.description,
            transaction_type=self.transaction_type,
            due_date=self.due_date,
        )

    def to_record(self) -> TransactionRecord:
        """Header plus milestones as one domain snapshot."""
        from escrow_kernel.domain.escrow import TransactionRecord as RecordDTO

        return RecordDTO(
            transaction=self.to_dto(),
            milestones=tuple(m.to_dto() for m in self.milestones),
        )

    @classmethod
    def from_dto(cls, dto: Transaction) -> TransactionModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.transaction_id,
            buyer_id=dto.buyer_id,
            seller_id=dto.seller_id,
            broker_id=dto.broker_id,
            title=dto.title,
            description=dto.description,
            transaction_type=dto.transaction_type,
            amount=dto.amount,
            currency=dto.currency,
            due_date=dto.due_date,
            version=dto.version,
            created_by_id=dto.created_by_id,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
        )


class MilestoneModel(Base):
    """Milestone row.

    Contract:
        Only status, version, completed_at, cancel_consents and updated_at
        change after creation, and only through the store's compare-and-swap.
    """

    __tablename__ = "escrow_milestones"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'completed', 'disputed', 'cancelled')",
            name="ck_escrow_milestones_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_milestones_positive_amount"),
        UniqueConstraint("transaction_id", "position", name="uq_escrow_milestones_position"),
        Index("ix_escrow_milestones_transaction", "transaction_id"),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("escrow_transactions.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    title: Mapped[LongText] = mapped_column(default="", nullable=False)
    description: Mapped[LongText] = mapped_column(default="", nullable=False)
    amount: Mapped[Money] = mapped_column(nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[ShortCode] = mapped_column(nullable=False, default="pending")
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Party roles (buyer/seller) that consented to a pre-start cancellation
    cancel_consents: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    transaction: Mapped[TransactionModel] = relationship(
        "TransactionModel",
        back_populates="milestones",
    )

    def __repr__(self) -> str:
        return f"<EscrowMilestone {self.id} {self.status} v{self.version}>"

    def to_dto(self) -> Milestone:
        """Convert ORM model to frozen domain DTO."""
        from escrow_kernel.domain.escrow import Milestone as MilestoneDTO, PartyRole
        from escrow_kernel.domain.milestone_machine import MilestoneStatus

        return MilestoneDTO(
            milestone_id=self.id,
            transaction_id=self.transaction_id,
            position=self.position,
            title=self.title,
            description=self.description,
            amount=self.amount,
            due_date=self.due_date,
            status=MilestoneStatus(self.status),
            version=self.version,
            completed_at=self.completed_at,
            cancel_consents=frozenset(PartyRole(r) for r in (self.cancel_consents or ())),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_dto(cls, dto: Milestone) -> MilestoneModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.milestone_id,
            transaction_id=dto.transaction_id,
            position=dto.position,
            title=dto.title,
            description=dto.description,
            amount=dto.amount,
            due_date=dto.due_date,
            status=dto.status.value,
            version=dto.version,
            completed_at=dto.completed_at,
            cancel_consents=sorted(r.value for r in dto.cancel_consents),
            created_at=dto.created_at,
            updated_at=dto.updated_at,
        )
