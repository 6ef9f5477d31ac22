"""
Custody verification and crash repair.

A request that commits a terminal compare-and-swap and dies before its
ledger append leaves funds held against a terminal milestone.  verify()
reports it; repair() appends the missing legs exactly once.
"""

from decimal import Decimal

import pytest

from escrow_kernel.domain.custody import Beneficiary, EntryKind, Payout
from escrow_kernel.domain.dispute import DisputeStatus, DisputeUpdate, Resolution
from escrow_kernel.domain.escrow import MilestoneChange
from escrow_kernel.domain.milestone_machine import MilestoneStatus
from escrow_kernel.domain.policy import BrokerFeePolicy, EscrowPolicy
from escrow_kernel.exceptions import ForbiddenError


def _crash_after_swap(store, clock, created, index, status, dispute_update=None):
    """Commit a terminal status without the settlement entries."""
    milestone_id = created.milestone_ids[index]
    milestone = store.get(created.transaction_id).milestone(milestone_id)
    store.compare_and_swap(
        created.transaction_id,
        milestone_id,
        milestone.version,
        MilestoneChange(
            changed_at=clock.now(),
            status=status,
            completed_at=clock.now() if status == MilestoneStatus.COMPLETED else None,
            dispute_update=dispute_update,
        ),
    )
    return milestone_id


class TestVerify:

    def test_missing_release_reported(self, service, store, created, deterministic_clock, seller):
        service.start_milestone(created.transaction_id, created.milestone_ids[0], seller)
        _crash_after_swap(store, deterministic_clock, created, 0, MilestoneStatus.COMPLETED)

        violations = service.verify_custody(created.transaction_id)

        assert {v.milestone_id for v in violations} == {created.milestone_ids[0]}
        assert all(v.status == MilestoneStatus.COMPLETED for v in violations)

    def test_violations_logged(self, service, store, created, deterministic_clock, captured_logs):
        _crash_after_swap(store, deterministic_clock, created, 1, MilestoneStatus.CANCELLED)
        service.verify_custody(created.transaction_id)

        warnings = [r for r in captured_logs() if r["message"] == "custody_violations_found"]
        assert warnings and warnings[0]["level"] == "WARNING"


class TestRepair:

    def test_release_appended_once(self, service, store, created, deterministic_clock, seller, admin):
        service.start_milestone(created.transaction_id, created.milestone_ids[0], seller)
        milestone_id = _crash_after_swap(
            store, deterministic_clock, created, 0, MilestoneStatus.COMPLETED,
        )

        repaired = service.repair_custody(created.transaction_id, admin)

        assert [(e.kind, e.beneficiary, e.amount) for e in repaired] == [
            (EntryKind.RELEASE, Beneficiary.SELLER, Decimal("400.00")),
        ]
        assert service.verify_custody(created.transaction_id) == []
        assert service.repair_custody(created.transaction_id, admin) == []
        assert len(store.ledger_entries(created.transaction_id, milestone_id)) == 2

    def test_cancelled_milestone_refunds_buyer(self, service, store, created, deterministic_clock, admin):
        _crash_after_swap(store, deterministic_clock, created, 1, MilestoneStatus.CANCELLED)

        repaired = service.repair_custody(created.transaction_id, admin)

        assert [(e.kind, e.amount) for e in repaired] == [(EntryKind.REFUND, Decimal("600.00"))]
        assert service.verify_custody(created.transaction_id) == []

    def test_resolved_dispute_shares_used(
        self, service, store, created, deterministic_clock, buyer, admin,
    ):
        milestone_id = created.milestone_ids[1]
        dispute_id = service.open_dispute(created.transaction_id, milestone_id, buyer, "partial")
        resolution = Resolution.split(Decimal("100.00"), Decimal("500.00"))
        _crash_after_swap(
            store, deterministic_clock, created, 1, MilestoneStatus.COMPLETED,
            dispute_update=DisputeUpdate(
                dispute_id=dispute_id,
                status=DisputeStatus.RESOLVED,
                at=deterministic_clock.now(),
                resolution=resolution,
                resolver_id=admin.actor_id,
            ),
        )

        repaired = service.repair_custody(created.transaction_id, admin)

        legs = {e.beneficiary: e.amount for e in repaired}
        assert legs == {Beneficiary.BUYER: Decimal("100.00"), Beneficiary.SELLER: Decimal("500.00")}
        assert service.verify_custody(created.transaction_id) == []

    def test_resolved_split_repaired_without_broker_fee(
        self, make_service, store, deterministic_clock, buyer, broker, admin, draft_factory,
    ):
        service = make_service(
            store, policy_override=EscrowPolicy(broker_fee=BrokerFeePolicy(rate=Decimal("0.10"))),
        )
        created = service.create_transaction(buyer, draft_factory(broker_id=broker.actor_id))
        dispute_id = service.open_dispute(
            created.transaction_id, created.milestone_ids[1], buyer, "partial",
        )
        _crash_after_swap(
            store, deterministic_clock, created, 1, MilestoneStatus.COMPLETED,
            dispute_update=DisputeUpdate(
                dispute_id=dispute_id,
                status=DisputeStatus.RESOLVED,
                at=deterministic_clock.now(),
                resolution=Resolution.split(Decimal("100.00"), Decimal("500.00")),
                resolver_id=admin.actor_id,
            ),
        )

        repaired = service.repair_custody(created.transaction_id, admin)

        legs = {e.beneficiary: e.amount for e in repaired}
        assert legs == {Beneficiary.BUYER: Decimal("100.00"), Beneficiary.SELLER: Decimal("500.00")}

    def test_healthy_transaction_untouched(self, service, created, admin):
        assert service.repair_custody(created.transaction_id, admin) == []

    def test_admin_only(self, service, created, buyer):
        with pytest.raises(ForbiddenError):
            service.repair_custody(created.transaction_id, buyer)

    def test_settled_legs_are_not_duplicated(self, service, store, created, buyer, seller):
        """A retried settlement hits the idempotency keys, not the ledger."""
        service.start_milestone(created.transaction_id, created.milestone_ids[0], seller)
        outcome = service.approve_milestone(created.transaction_id, created.milestone_ids[0], buyer)

        record = store.get(created.transaction_id)
        again = service.custody_ledger.settle(
            record, created.milestone_ids[0], Payout.to_seller(Decimal("400.00")), buyer.actor_id,
        )

        assert [e.entry_id for e in again] == [e.entry_id for e in outcome.entries]
        assert service.verify_custody(created.transaction_id) == []
