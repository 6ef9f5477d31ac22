"""
escrow_kernel.services.transaction_service -- Public escrow engine contract.

Responsibility:
    The single entry point the UI/API layer calls.  Validates and creates
    transactions, routes milestone operations to the state machine, the
    approval coordinator and the dispute resolver, serves read views, and
    emits notifications after each committed change.

Architecture position:
    Kernel > Services (facade).  Owns wiring of the kernel collaborators;
    callers supply only a LedgerStore and, optionally, clock/policy/notifier.

Invariants enforced:
    - Drafts are validated before any storage write; a rejected draft
      persists nothing.
    - Transactions and their hold entries are created in one atomic store
      call.
    - All cross-request coordination goes through compare_and_swap; the
      service holds no locks.
    - Notification failures never fail or roll back an operation.

Failure modes:
    ValidationError, NotFoundError, ForbiddenError, InvalidStateError and
    ConflictError subclasses, as listed per operation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any
from uuid import UUID, uuid4

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.custody import CustodyViolation, LedgerEntry, Payout
from escrow_kernel.domain.dispute import Dispute, DisputeStatus, Resolution
from escrow_kernel.domain.escrow import (
    Actor,
    CreatedTransaction,
    Milestone,
    MilestoneChange,
    PartyRole,
    Transaction,
    TransactionDraft,
    validate_draft,
)
from escrow_kernel.domain.milestone_machine import (
    MilestoneStatus,
    MilestoneTrigger,
    next_status,
)
from escrow_kernel.domain.policy import EscrowPolicy
from escrow_kernel.exceptions import ConflictError, ForbiddenError, VersionConflictError
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.selectors.escrow_selector import EscrowSelector, TransactionView
from escrow_kernel.services.approval_coordinator import ApprovalCoordinator, ApprovalOutcome
from escrow_kernel.services.custody_ledger import FundCustodyLedger
from escrow_kernel.services.dispute_resolver import DisputeResolver, ResolutionOutcome
from escrow_kernel.services.notifier import (
    Notification,
    NotificationEmitter,
    NotificationType,
    NullNotifier,
    safe_emit,
)
from escrow_kernel.store.base import LedgerStore

logger = get_logger("services.transaction_service")

CANCELLATION_PARTIES = frozenset({PartyRole.BUYER, PartyRole.SELLER})


@dataclass(frozen=True)
class CancellationOutcome:
    """Result of a cancellation request.

    ``cancelled`` is True once both buyer and seller have consented; the
    call that recorded the second consent carries the refund entries.
    """

    milestone_id: UUID
    version: int
    consents: frozenset[PartyRole]
    cancelled: bool
    entries: tuple[LedgerEntry, ...] = ()


class TransactionService:
    """
    Facade over the escrow kernel.

    Contract:
        Every method takes the authenticated ``Actor`` (or ids the actor is
        checked against) and either completes fully or raises a typed
        EscrowKernelError without partial ledger state.
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock | None = None,
        policy: EscrowPolicy | None = None,
        notifier: NotificationEmitter | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._policy = policy or EscrowPolicy()
        self._notifier = notifier or NullNotifier()
        self._custody = FundCustodyLedger(store, self._policy, self._clock)
        self._approvals = ApprovalCoordinator(store, self._custody, self._policy, self._clock)
        self._disputes = DisputeResolver(store, self._custody, self._policy, self._clock)
        self._selector = EscrowSelector(store, self._custody)

    @property
    def custody_ledger(self) -> FundCustodyLedger:
        return self._custody

    @property
    def policy(self) -> EscrowPolicy:
        return self._policy

    # =========================================================================
    # Creation
    # =========================================================================

    def create_transaction(self, actor: Actor, draft: TransactionDraft) -> CreatedTransaction:
        """
        Open an escrow transaction with its milestones and hold entries.

        Raises:
            ForbiddenError: Actor is neither the draft's buyer nor its broker.
            ValidationError: Milestone amounts do not sum to the total, no milestones, bad amounts
                or an unknown currency.
        """
        with LogContext.bind(actor_id=actor.actor_id):
            if actor.actor_id not in (draft.buyer_id, draft.broker_id):
                raise ForbiddenError(
                    str(actor.actor_id),
                    "create transaction",
                    "only the buyer or broker may create a transaction",
                )

            if not draft.currency:
                draft = replace(draft, currency=self._policy.default_currency)
            draft = validate_draft(draft, self._policy.amount_tolerance)

            now = self._clock.now()
            transaction = Transaction(
                transaction_id=uuid4(),
                buyer_id=draft.buyer_id,
                seller_id=draft.seller_id,
                broker_id=draft.broker_id,
                amount=draft.amount,
                currency=draft.currency,
                created_by_id=actor.actor_id,
                created_at=now,
                updated_at=now,
                title=draft.title,
                description=draft.description,
                transaction_type=draft.transaction_type,
                due_date=draft.due_date,
            )
            milestones = tuple(
                Milestone(
                    milestone_id=uuid4(),
                    transaction_id=transaction.transaction_id,
                    position=position,
                    title=spec.title,
                    description=spec.description,
                    amount=spec.amount,
                    due_date=spec.due_date,
                    status=MilestoneStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                for position, spec in enumerate(draft.milestones)
            )
            entries = self._custody.hold_entries(transaction, milestones, actor.actor_id)

            self._store.create(transaction, milestones, entries)

            logger.info(
                "transaction_created",
                extra={
                    "transaction_id": str(transaction.transaction_id),
                    "amount": str(transaction.amount),
                    "currency": transaction.currency,
                    "milestone_count": len(milestones),
                    "broker_assigned": transaction.broker_id is not None,
                },
            )
            self._notify(
                NotificationType.TRANSACTION_CREATED,
                transaction.transaction_id,
                actor,
                payload={"amount": str(transaction.amount), "currency": transaction.currency},
            )
            return CreatedTransaction(
                transaction_id=transaction.transaction_id,
                version=transaction.version,
                milestone_ids=tuple(m.milestone_id for m in milestones),
            )

    # =========================================================================
    # Milestone operations
    # =========================================================================

    def start_milestone(self, transaction_id: UUID, milestone_id: UUID, actor: Actor) -> int:
        """Seller starts work: ``pending -> active``.  Returns the new milestone version."""
        with LogContext.bind(
            actor_id=actor.actor_id, transaction_id=transaction_id, milestone_id=milestone_id,
        ):
            record = self._store.get(transaction_id)
            milestone = record.milestone(milestone_id)
            if record.transaction.party_role(actor.actor_id) != PartyRole.SELLER:
                raise ForbiddenError(
                    str(actor.actor_id), "start milestone", "only the seller may start work",
                )

            target = next_status(str(milestone_id), milestone.status, MilestoneTrigger.START)
            version = self._swap(
                transaction_id,
                milestone_id,
                milestone.version,
                MilestoneChange(changed_at=self._clock.now(), status=target),
            )

            logger.info("milestone_started", extra={"version": version})
            self._notify(NotificationType.MILESTONE_STARTED, transaction_id, actor, milestone_id)
            return version

    def approve_milestone(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        actor: Actor,
        expected_version: int | None = None,
    ) -> ApprovalOutcome:
        """Approve a milestone and release its funds at most once."""
        with LogContext.bind(
            actor_id=actor.actor_id, transaction_id=transaction_id, milestone_id=milestone_id,
        ):
            outcome = self._approvals.approve(
                transaction_id, milestone_id, actor, expected_version,
            )
            if outcome.released:
                self._notify(
                    NotificationType.MILESTONE_APPROVED,
                    transaction_id,
                    actor,
                    milestone_id,
                    payload={"released": [str(e.amount) for e in outcome.entries]},
                )
            return outcome

    def request_cancellation(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        actor: Actor,
    ) -> CancellationOutcome:
        """
        Record the actor's consent to cancel a pending milestone.

        The second party's consent moves the milestone to ``cancelled`` and
        refunds the buyer in full.  Repeating a consent already recorded is
        a no-op.

        Raises:
            ForbiddenError: Actor is not the buyer or the seller.
            InvalidMilestoneTransitionError: Milestone is not pending.
            ConflictError: Milestone changed concurrently.
        """
        with LogContext.bind(
            actor_id=actor.actor_id, transaction_id=transaction_id, milestone_id=milestone_id,
        ):
            record = self._store.get(transaction_id)
            milestone = record.milestone(milestone_id)
            role = record.transaction.party_role(actor.actor_id)
            if role not in CANCELLATION_PARTIES:
                raise ForbiddenError(
                    str(actor.actor_id),
                    "cancel milestone",
                    "cancellation needs buyer and seller consent",
                )

            target = next_status(str(milestone_id), milestone.status, MilestoneTrigger.MUTUAL_CANCEL)

            if role in milestone.cancel_consents:
                return CancellationOutcome(
                    milestone_id=milestone_id,
                    version=milestone.version,
                    consents=milestone.cancel_consents,
                    cancelled=False,
                )

            consents = milestone.cancel_consents | {role}
            agreed = consents >= CANCELLATION_PARTIES
            version = self._swap(
                transaction_id,
                milestone_id,
                milestone.version,
                MilestoneChange(
                    changed_at=self._clock.now(),
                    status=target if agreed else None,
                    cancel_consents=consents,
                ),
            )

            entries: list[LedgerEntry] = []
            if agreed:
                entries = self._custody.settle(
                    record, milestone_id, Payout.to_buyer(milestone.amount), actor.actor_id,
                )
                logger.info("milestone_cancelled", extra={"version": version})
                self._notify(NotificationType.MILESTONE_CANCELLED, transaction_id, actor, milestone_id)
            else:
                logger.info(
                    "cancellation_requested",
                    extra={"consent_role": role.value, "version": version},
                )
                self._notify(
                    NotificationType.CANCELLATION_REQUESTED,
                    transaction_id,
                    actor,
                    milestone_id,
                    payload={"role": role.value},
                )

            return CancellationOutcome(
                milestone_id=milestone_id,
                version=version,
                consents=frozenset(consents),
                cancelled=agreed,
                entries=tuple(entries),
            )

    # =========================================================================
    # Disputes
    # =========================================================================

    def open_dispute(
        self,
        transaction_id: UUID,
        milestone_id: UUID,
        actor: Actor,
        reason: str,
    ) -> UUID:
        """Dispute a pending or active milestone.  Returns the dispute id."""
        with LogContext.bind(
            actor_id=actor.actor_id, transaction_id=transaction_id, milestone_id=milestone_id,
        ):
            dispute = self._disputes.open(transaction_id, milestone_id, actor, reason)
            self._notify(
                NotificationType.DISPUTE_OPENED,
                transaction_id,
                actor,
                milestone_id,
                dispute_id=dispute.dispute_id,
            )
            return dispute.dispute_id

    def review_dispute(self, dispute_id: UUID, reviewer: Actor) -> Dispute:
        with LogContext.bind(actor_id=reviewer.actor_id, dispute_id=dispute_id):
            dispute = self._disputes.begin_review(dispute_id, reviewer)
            self._notify(
                NotificationType.DISPUTE_UNDER_REVIEW,
                dispute.transaction_id,
                reviewer,
                dispute.milestone_id,
                dispute_id=dispute_id,
            )
            return dispute

    def resolve_dispute(
        self,
        dispute_id: UUID,
        resolver: Actor,
        resolution: Resolution,
    ) -> ResolutionOutcome:
        with LogContext.bind(actor_id=resolver.actor_id, dispute_id=dispute_id):
            outcome = self._disputes.resolve(dispute_id, resolver, resolution)
            self._notify(
                NotificationType.DISPUTE_RESOLVED,
                outcome.dispute.transaction_id,
                resolver,
                outcome.dispute.milestone_id,
                dispute_id=dispute_id,
                payload={
                    "resolution": resolution.kind.value,
                    "milestone_status": outcome.milestone_status.value,
                },
            )
            return outcome

    def close_dispute(self, dispute_id: UUID, actor: Actor) -> Dispute:
        with LogContext.bind(actor_id=actor.actor_id, dispute_id=dispute_id):
            dispute = self._disputes.close(dispute_id, actor)
            self._notify(
                NotificationType.DISPUTE_CLOSED,
                dispute.transaction_id,
                actor,
                dispute.milestone_id,
                dispute_id=dispute_id,
            )
            return dispute

    # =========================================================================
    # Reads and custody
    # =========================================================================

    def get_transaction(self, transaction_id: UUID) -> TransactionView:
        return self._selector.transaction_view(transaction_id)

    def list_transactions(self, party_id: UUID | None = None) -> list[TransactionView]:
        return self._selector.list_transactions(party_id)

    def list_disputes(
        self,
        status: DisputeStatus | None = None,
        transaction_id: UUID | None = None,
        assigned_to_id: UUID | None = None,
    ) -> list[Dispute]:
        return self._selector.list_disputes(status, transaction_id, assigned_to_id)

    def verify_custody(self, transaction_id: UUID) -> list[CustodyViolation]:
        return self._custody.verify(transaction_id)

    def repair_custody(self, transaction_id: UUID, actor: Actor) -> list[LedgerEntry]:
        """Append settlement entries a crashed request left behind.  Admin only."""
        if not actor.is_admin:
            raise ForbiddenError(str(actor.actor_id), "repair custody")
        with LogContext.bind(actor_id=actor.actor_id, transaction_id=transaction_id):
            return self._custody.repair(transaction_id, actor.actor_id)

    # =========================================================================
    # Helpers
    # =========================================================================

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

    def _notify(
        self,
        event_type: NotificationType,
        transaction_id: UUID,
        actor: Actor,
        milestone_id: UUID | None = None,
        dispute_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        safe_emit(
            self._notifier,
            Notification(
                event_type=event_type,
                transaction_id=transaction_id,
                actor_id=actor.actor_id,
                occurred_at=self._clock.now(),
                milestone_id=milestone_id,
                dispute_id=dispute_id,
                payload=payload or {},
            ),
        )
