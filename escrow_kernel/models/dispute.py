"""
Module: escrow_kernel.models.dispute
Responsibility: ORM persistence for milestone disputes.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - At most one active (open/under_review) dispute per milestone, via a
      partial unique index.
    - Status is one of the DisputeStatus values (CHECK constraint).
    - Resolution is stored as JSON with Decimal shares serialized as strings.

Failure modes:
    - IntegrityError when a second active dispute is inserted for a milestone.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base, UUIDString
from escrow_kernel.db.types import LongText, ShortCode

if TYPE_CHECKING:
    from escrow_kernel.domain.dispute import Dispute


_ACTIVE_PREDICATE = text("status IN ('open', 'under_review')")


class DisputeModel(Base):
    """A dispute raised against one milestone."""

    __tablename__ = "escrow_disputes"

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'under_review', 'resolved', 'closed')",
            name="ck_escrow_disputes_valid_status",
        ),
        Index(
            "uq_escrow_disputes_one_active",
            "milestone_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_escrow_disputes_transaction", "transaction_id"),
        Index("ix_escrow_disputes_status", "status"),
        Index("ix_escrow_disputes_assigned", "assigned_to_id"),
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
    raised_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reason: Mapped[LongText] = mapped_column(nullable=False)
    status: Mapped[ShortCode] = mapped_column(nullable=False, default="open")
    prior_milestone_status: Mapped[ShortCode] = mapped_column(nullable=False)
    assigned_to_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resolution: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resolver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<EscrowDispute {self.id} milestone={self.milestone_id} {self.status}>"

    def to_dto(self) -> Dispute:
        """Convert ORM model to frozen domain DTO."""
        from escrow_kernel.domain.dispute import (
            Dispute as DisputeDTO,
            DisputeStatus,
            Resolution,
        )
        from escrow_kernel.domain.milestone_machine import MilestoneStatus

        return DisputeDTO(
            dispute_id=self.id,
            transaction_id=self.transaction_id,
            milestone_id=self.milestone_id,
            raised_by_id=self.raised_by_id,
            reason=self.reason,
            status=DisputeStatus(self.status),
            prior_milestone_status=MilestoneStatus(self.prior_milestone_status),
            created_at=self.created_at,
            updated_at=self.updated_at,
            assigned_to_id=self.assigned_to_id,
            resolution=Resolution.from_dict(self.resolution) if self.resolution else None,
            resolver_id=self.resolver_id,
            resolved_at=self.resolved_at,
            closed_at=self.closed_at,
        )

    @classmethod
    def from_dto(cls, dto: Dispute) -> DisputeModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.dispute_id,
            transaction_id=dto.transaction_id,
            milestone_id=dto.milestone_id,
            raised_by_id=dto.raised_by_id,
            reason=dto.reason,
            status=dto.status.value,
            prior_milestone_status=dto.prior_milestone_status.value,
            assigned_to_id=dto.assigned_to_id,
            resolution=dto.resolution.to_dict() if dto.resolution else None,
            resolver_id=dto.resolver_id,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
            resolved_at=dto.resolved_at,
            closed_at=dto.closed_at,
        )
