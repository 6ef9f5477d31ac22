"""
Concurrent milestone operations.

The compare-and-swap on the milestone version is the only serialization
point: N simultaneous approvals release funds exactly once, and a dispute
racing an approval leaves exactly one of them committed.

Runs against the in-memory store; its lock is the atomic section the SQL
store gets from ``UPDATE ... WHERE version = :expected``.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from escrow_kernel.domain.custody import EntryKind
from escrow_kernel.domain.milestone_machine import MilestoneStatus
from escrow_kernel.exceptions import (
    ConflictError,
    DisputeAlreadyOpenError,
    InvalidMilestoneTransitionError,
)
from escrow_kernel.store.memory import InMemoryLedgerStore

THREADS = 16


@pytest.fixture
def ledger():
    return InMemoryLedgerStore()


@pytest.fixture
def memory_service(make_service, ledger):
    return make_service(ledger)


@pytest.fixture
def started(memory_service, buyer, seller, draft_factory):
    created = memory_service.create_transaction(buyer, draft_factory())
    memory_service.start_milestone(created.transaction_id, created.milestone_ids[0], seller)
    return created


def _race(n, fn):
    """Run ``fn`` on ``n`` threads released together; return results or exceptions."""
    barrier = Barrier(n)

    def _run(i):
        barrier.wait()
        try:
            return fn(i)
        except Exception as exc:  # collected for assertions
            return exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        return list(pool.map(_run, range(n)))


class TestConcurrentApproval:

    @pytest.mark.parametrize("round_", range(5))
    def test_exactly_one_release(self, memory_service, ledger, started, buyer, round_):
        milestone_id = started.milestone_ids[0]

        results = _race(
            THREADS,
            lambda _: memory_service.approve_milestone(
                started.transaction_id, milestone_id, buyer,
            ),
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert errors == []
        assert sum(1 for r in results if r.released) == 1

        releases = [
            e for e in ledger.ledger_entries(started.transaction_id, milestone_id)
            if e.kind == EntryKind.RELEASE
        ]
        assert len(releases) == 1
        view = memory_service.get_transaction(started.transaction_id)
        assert view.custody[milestone_id].released == Decimal("400.00")
        assert view.milestones[0].version == 3
        assert memory_service.verify_custody(started.transaction_id) == []


class TestApprovalVersusDispute:

    @pytest.mark.parametrize("round_", range(5))
    def test_one_side_wins(self, memory_service, started, buyer, seller, round_):
        milestone_id = started.milestone_ids[0]

        def _act(i):
            if i == 0:
                return memory_service.approve_milestone(
                    started.transaction_id, milestone_id, buyer,
                )
            return memory_service.open_dispute(
                started.transaction_id, milestone_id, seller, "race",
            )

        approval, dispute = _race(2, _act)

        lost = [r for r in (approval, dispute) if isinstance(r, Exception)]
        assert len(lost) == 1
        assert isinstance(lost[0], (ConflictError, InvalidMilestoneTransitionError))

        view = memory_service.get_transaction(started.transaction_id)
        status = view.milestones[0].status
        if isinstance(dispute, Exception):
            assert approval.released
            assert status == MilestoneStatus.COMPLETED
            assert memory_service.list_disputes() == []
        else:
            assert status == MilestoneStatus.DISPUTED
            assert view.custody[milestone_id].held == Decimal("400.00")
            assert len(memory_service.list_disputes()) == 1
        assert memory_service.verify_custody(started.transaction_id) == []


class TestConcurrentDisputes:

    def test_single_active_dispute(self, memory_service, started, buyer, seller):
        milestone_id = started.milestone_ids[0]
        parties = [buyer, seller] * (THREADS // 2)

        results = _race(
            THREADS,
            lambda i: memory_service.open_dispute(
                started.transaction_id, milestone_id, parties[i], f"claim {i}",
            ),
        )

        opened = [r for r in results if not isinstance(r, Exception)]
        assert len(opened) == 1
        assert all(
            isinstance(r, (ConflictError, DisputeAlreadyOpenError, InvalidMilestoneTransitionError))
            for r in results if isinstance(r, Exception)
        )
        assert len(memory_service.list_disputes()) == 1
