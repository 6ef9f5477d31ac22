"""
Module: escrow_kernel.store.sql
Responsibility: LedgerStore backed by SQLAlchemy (PostgreSQL in production,
    SQLite for tests and local development).
Architecture position: Kernel > Store.  Imports db/, models/ and domain/.

Invariants enforced:
    - One session (one database transaction) per store call, via
      session_scope(); a failed call leaves nothing behind.
    - compare_and_swap is ``UPDATE escrow_milestones ... WHERE id = :id AND
      version = :expected``; rowcount 0 means the caller lost the race.
      The dispute insert/update and the transaction version bump run in the
      same database transaction.
    - Ledger idempotency is the unique constraint on idempotency_key: on
      IntegrityError the stored entry is read back and returned.

Failure modes:
    - VersionConflictError, TransactionNotFoundError, MilestoneNotFoundError,
      DisputeNotFoundError as documented on LedgerStore.
    - Any other SQLAlchemyError propagates after rollback.
"""

from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from escrow_kernel.db.base import UTCDateTime
from escrow_kernel.db.engine import get_session_factory, session_scope
from escrow_kernel.domain.custody import LedgerEntry
from escrow_kernel.domain.dispute import ACTIVE_DISPUTE_STATUSES, Dispute, DisputeStatus
from escrow_kernel.domain.escrow import Milestone, MilestoneChange, Transaction, TransactionRecord
from escrow_kernel.exceptions import (
    DisputeNotFoundError,
    MilestoneNotFoundError,
    TransactionNotFoundError,
    VersionConflictError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models import (
    DisputeModel,
    LedgerEntryModel,
    MilestoneModel,
    TransactionModel,
)
from escrow_kernel.store.base import LedgerStore

logger = get_logger("store.sql")


class SqlLedgerStore(LedgerStore):
    """Relational store.  Tables must exist (see ``db.engine.create_tables``)."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._session_factory = session_factory or get_session_factory()

    def _scope(self):
        return session_scope(self._session_factory)

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        transaction: Transaction,
        milestones: Sequence[Milestone],
        entries: Sequence[LedgerEntry],
    ) -> UUID:
        with self._scope() as session:
            session.add(TransactionModel.from_dto(transaction))
            # Parent row first; SQLite enforces the milestone FK immediately
            session.flush()
            session.add_all(MilestoneModel.from_dto(m) for m in milestones)
            session.flush()
            session.add_all(
                LedgerEntryModel.from_dto(entry, sequence)
                for sequence, entry in enumerate(entries, start=1)
            )
        logger.debug(
            "transaction_persisted",
            extra={
                "transaction_id": str(transaction.transaction_id),
                "milestone_count": len(milestones),
            },
        )
        return transaction.transaction_id

    def compare_and_swap(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        expected_version: int,
        change: MilestoneChange,
    ) -> int:
        values: dict = {
            "version": expected_version + 1,
            "updated_at": change.changed_at,
        }
        if change.status is not None:
            values["status"] = change.status.value
        if change.completed_at is not None:
            values["completed_at"] = func.coalesce(
                MilestoneModel.completed_at, literal(change.completed_at, UTCDateTime()),
            )
        if change.cancel_consents is not None:
            values["cancel_consents"] = sorted(r.value for r in change.cancel_consents)

        with self._scope() as session:
            result = session.execute(
                update(MilestoneModel)
                .where(
                    MilestoneModel.id == milestone_id,
                    MilestoneModel.transaction_id == transaction_id,
                    MilestoneModel.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_swap_failure(session, transaction_id, milestone_id, expected_version)

            if change.dispute_update is not None:
                self._apply_dispute_update(session, change)

            if change.open_dispute is not None:
                session.add(DisputeModel.from_dto(change.open_dispute))

            session.execute(
                update(TransactionModel)
                .where(TransactionModel.id == transaction_id)
                .values(
                    version=TransactionModel.version + 1,
                    updated_at=change.changed_at,
                )
                .execution_options(synchronize_session=False)
            )

        return expected_version + 1

    def _raise_swap_failure(
        self,
        session: Session,
        transaction_id: UUID,
        milestone_id: UUID,
        expected_version: int,
    ) -> None:
        actual = session.execute(
            select(MilestoneModel.version).where(
                MilestoneModel.id == milestone_id,
                MilestoneModel.transaction_id == transaction_id,
            )
        ).scalar_one_or_none()
        if actual is not None:
            raise VersionConflictError(str(milestone_id), expected_version, actual)
        if session.get(TransactionModel, transaction_id) is None:
            raise TransactionNotFoundError(str(transaction_id))
        raise MilestoneNotFoundError(str(transaction_id), str(milestone_id))

    def _apply_dispute_update(self, session: Session, change: MilestoneChange) -> None:
        dispute_update = change.dispute_update
        values: dict = {
            "status": dispute_update.status.value,
            "updated_at": dispute_update.at,
        }
        if dispute_update.assigned_to_id is not None:
            values["assigned_to_id"] = dispute_update.assigned_to_id
        if dispute_update.status == DisputeStatus.RESOLVED:
            values["resolution"] = (
                dispute_update.resolution.to_dict() if dispute_update.resolution else None
            )
            values["resolver_id"] = dispute_update.resolver_id
            values["resolved_at"] = dispute_update.at
        if dispute_update.status == DisputeStatus.CLOSED:
            values["closed_at"] = dispute_update.at

        result = session.execute(
            update(DisputeModel)
            .where(DisputeModel.id == dispute_update.dispute_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise DisputeNotFoundError(str(dispute_update.dispute_id))

    def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        try:
            with self._scope() as session:
                existing = self._entry_by_key(session, entry.idempotency_key)
                if existing is not None:
                    return existing.to_dto()

                last = session.execute(
                    select(func.max(LedgerEntryModel.sequence)).where(
                        LedgerEntryModel.transaction_id == entry.transaction_id,
                    )
                ).scalar_one_or_none()
                model = LedgerEntryModel.from_dto(entry, (last or 0) + 1)
                session.add(model)
                session.flush()
                return model.to_dto()
        except IntegrityError:
            # Lost an append race on the same key: the winner's row is the entry
            with self._scope() as session:
                existing = self._entry_by_key(session, entry.idempotency_key)
                if existing is None:
                    raise
                logger.info(
                    "ledger_entry_deduplicated",
                    extra={"idempotency_key": entry.idempotency_key},
                )
                return existing.to_dto()

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, transaction_id: UUID) -> TransactionRecord:
        with self._scope() as session:
            model = session.get(TransactionModel, transaction_id)
            if model is None:
                raise TransactionNotFoundError(str(transaction_id))
            return model.to_record()

    def get_dispute(self, dispute_id: UUID) -> Dispute:
        with self._scope() as session:
            model = session.get(DisputeModel, dispute_id)
            if model is None:
                raise DisputeNotFoundError(str(dispute_id))
            return model.to_dto()

    def ledger_entries(
        self,
        transaction_id: UUID,
        milestone_id: UUID | None = None,
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntryModel).where(
            LedgerEntryModel.transaction_id == transaction_id,
        )
        if milestone_id is not None:
            stmt = stmt.where(LedgerEntryModel.milestone_id == milestone_id)
        stmt = stmt.order_by(LedgerEntryModel.sequence, LedgerEntryModel.created_at)

        with self._scope() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def find_transactions(self, party_id: UUID | None = None) -> list[TransactionRecord]:
        stmt = select(TransactionModel).order_by(TransactionModel.created_at)
        if party_id is not None:
            stmt = stmt.where(or_(
                TransactionModel.buyer_id == party_id,
                TransactionModel.seller_id == party_id,
                TransactionModel.broker_id == party_id,
            ))
        with self._scope() as session:
            return [m.to_record() for m in session.scalars(stmt)]

    def find_disputes(
        self,
        status: DisputeStatus | None = None,
        transaction_id: UUID | None = None,
        assigned_to_id: UUID | None = None,
    ) -> list[Dispute]:
        stmt = select(DisputeModel).order_by(DisputeModel.created_at)
        if status is not None:
            stmt = stmt.where(DisputeModel.status == status.value)
        if transaction_id is not None:
            stmt = stmt.where(DisputeModel.transaction_id == transaction_id)
        if assigned_to_id is not None:
            stmt = stmt.where(DisputeModel.assigned_to_id == assigned_to_id)
        with self._scope() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def active_dispute(self, milestone_id: UUID) -> Dispute | None:
        stmt = select(DisputeModel).where(
            DisputeModel.milestone_id == milestone_id,
            DisputeModel.status.in_([s.value for s in ACTIVE_DISPUTE_STATUSES]),
        )
        with self._scope() as session:
            model = session.scalars(stmt).first()
            return model.to_dto() if model is not None else None

    @staticmethod
    def _entry_by_key(session: Session, key: str) -> LedgerEntryModel | None:
        return session.scalars(
            select(LedgerEntryModel).where(LedgerEntryModel.idempotency_key == key)
        ).first()
