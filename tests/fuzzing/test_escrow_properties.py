"""
Property-based tests for amount consistency and custody conservation.

Generated inputs:
- Milestone amount lists: exact sums accepted, any cent of drift rejected
- Broker fee rates: fee + seller amount always equals the payout
- Random settlement paths per milestone (approve, mutual cancel, dispute
  resolved with a random split, dispute withdrawn, untouched): custody
  always replays to the milestone amount and matches the milestone status
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from escrow_kernel.domain.clock import DeterministicClock
from escrow_kernel.domain.dispute import Resolution
from escrow_kernel.domain.escrow import (
    ADMIN_ROLE,
    Actor,
    MilestoneSpec,
    TransactionDraft,
    validate_draft,
)
from escrow_kernel.domain.milestone_machine import MilestoneStatus
from escrow_kernel.domain.policy import BrokerFeePolicy, EscrowPolicy
from escrow_kernel.exceptions import AmountMismatchError
from escrow_kernel.services.transaction_service import TransactionService
from escrow_kernel.store.memory import InMemoryLedgerStore

CENT = Decimal("0.01")

amounts = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("100000.00"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

PATHS = ("approve", "cancel", "resolve", "withdraw", "untouched")

FUZZ_SETTINGS = settings(
    max_examples=60,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)


def _draft(buyer_id, seller_id, total, milestone_amounts, broker_id=None) -> TransactionDraft:
    return TransactionDraft(
        buyer_id=buyer_id,
        seller_id=seller_id,
        broker_id=broker_id,
        amount=total,
        currency="USD",
        milestones=tuple(
            MilestoneSpec(title=f"m{i}", amount=a) for i, a in enumerate(milestone_amounts)
        ),
    )


class TestAmountConsistency:

    @FUZZ_SETTINGS
    @given(st.lists(amounts, min_size=1, max_size=8))
    def test_exact_sum_accepted(self, milestone_amounts):
        total = sum(milestone_amounts, Decimal("0"))
        draft = validate_draft(_draft(uuid4(), uuid4(), total, milestone_amounts))
        assert sum((m.amount for m in draft.milestones), Decimal("0")) == draft.amount

    @FUZZ_SETTINGS
    @given(
        st.lists(amounts, min_size=1, max_size=8),
        st.integers(min_value=1, max_value=10_000),
        st.booleans(),
    )
    def test_cent_drift_rejected(self, milestone_amounts, cents, over):
        total = sum(milestone_amounts, Decimal("0"))
        drift = CENT * cents
        if not over and total - drift <= 0:
            over = True
        declared = total + drift if over else total - drift

        with pytest.raises(AmountMismatchError):
            validate_draft(_draft(uuid4(), uuid4(), declared, milestone_amounts))


class TestBrokerFee:

    @FUZZ_SETTINGS
    @given(
        amounts,
        st.decimals(min_value=Decimal("0"), max_value=Decimal("0.5"), places=4),
    )
    def test_legs_sum_to_payout(self, payout, rate):
        seller_amount, fee = BrokerFeePolicy(rate=rate).split(payout)
        assert seller_amount + fee == payout
        assert fee >= 0
        assert fee == fee.quantize(CENT)


class TestCustodyConservation:

    @settings(
        max_examples=40,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.data_too_large],
    )
    @given(
        st.lists(amounts, min_size=1, max_size=5),
        st.data(),
        st.sampled_from([Decimal("0"), Decimal("0.025"), Decimal("0.1")]),
    )
    def test_every_path_conserves_custody(self, milestone_amounts, data, fee_rate):
        buyer, seller, broker = Actor(uuid4()), Actor(uuid4()), Actor(uuid4())
        admin = Actor(uuid4(), roles=frozenset({ADMIN_ROLE}))
        service = TransactionService(
            InMemoryLedgerStore(),
            clock=DeterministicClock(),
            policy=EscrowPolicy(broker_fee=BrokerFeePolicy(rate=fee_rate)),
        )

        total = sum(milestone_amounts, Decimal("0"))
        created = service.create_transaction(
            buyer,
            _draft(buyer.actor_id, seller.actor_id, total, milestone_amounts, broker.actor_id),
        )
        tid = created.transaction_id

        expected: dict = {}
        for milestone_id, amount in zip(created.milestone_ids, milestone_amounts):
            path = data.draw(st.sampled_from(PATHS))
            if path == "approve":
                service.start_milestone(tid, milestone_id, seller)
                service.approve_milestone(tid, milestone_id, buyer)
                expected[milestone_id] = MilestoneStatus.COMPLETED
            elif path == "cancel":
                service.request_cancellation(tid, milestone_id, seller)
                service.request_cancellation(tid, milestone_id, buyer)
                expected[milestone_id] = MilestoneStatus.CANCELLED
            elif path == "resolve":
                cents = data.draw(st.integers(min_value=0, max_value=int(amount / CENT)))
                buyer_share = CENT * cents
                dispute_id = service.open_dispute(tid, milestone_id, buyer, "fuzz")
                outcome = service.resolve_dispute(
                    dispute_id, admin, Resolution.split(buyer_share, amount - buyer_share),
                )
                expected[milestone_id] = (
                    MilestoneStatus.CANCELLED if buyer_share == amount
                    else MilestoneStatus.COMPLETED
                )
                assert outcome.milestone_status == expected[milestone_id]
            elif path == "withdraw":
                dispute_id = service.open_dispute(tid, milestone_id, seller, "fuzz")
                service.close_dispute(dispute_id, seller)
                expected[milestone_id] = MilestoneStatus.PENDING
            else:
                expected[milestone_id] = MilestoneStatus.PENDING

        view = service.get_transaction(tid)
        assert service.verify_custody(tid) == []
        assert view.totals.total == total
        for milestone in view.milestones:
            totals = view.custody[milestone.milestone_id]
            assert milestone.status == expected[milestone.milestone_id]
            assert totals.total == milestone.amount
            if totals.released > 0:
                assert milestone.status == MilestoneStatus.COMPLETED
