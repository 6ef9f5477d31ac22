"""
Notifications are emitted after a transition commits and never undo it.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from escrow_kernel.domain.dispute import Resolution
from escrow_kernel.domain.milestone_machine import MilestoneStatus
from escrow_kernel.services.notifier import (
    Notification,
    NotificationType,
    NullNotifier,
    SubscriptionNotifier,
    safe_emit,
)


class _ExplodingNotifier:
    def emit(self, notification: Notification) -> None:
        raise RuntimeError("mail server down")


@pytest.fixture
def received(notifier):
    events: list[Notification] = []
    notifier.subscribe(events.append)
    return events


class TestEmission:

    def test_lifecycle_events_in_order(self, service, received, buyer, seller, admin, draft_factory):
        created = service.create_transaction(buyer, draft_factory())
        first, second = created.milestone_ids
        service.start_milestone(created.transaction_id, first, seller)
        service.approve_milestone(created.transaction_id, first, buyer)
        dispute_id = service.open_dispute(created.transaction_id, second, seller, "unpaid")
        service.review_dispute(dispute_id, admin)
        service.resolve_dispute(dispute_id, admin, Resolution.release_seller())

        assert [n.event_type for n in received] == [
            NotificationType.TRANSACTION_CREATED,
            NotificationType.MILESTONE_STARTED,
            NotificationType.MILESTONE_APPROVED,
            NotificationType.DISPUTE_OPENED,
            NotificationType.DISPUTE_UNDER_REVIEW,
            NotificationType.DISPUTE_RESOLVED,
        ]
        assert all(n.transaction_id == created.transaction_id for n in received)
        assert received[3].dispute_id == dispute_id
        assert received[5].payload["milestone_status"] == "completed"

    def test_idempotent_approval_not_renotified(self, service, created, received, buyer, seller):
        milestone_id = created.milestone_ids[0]
        service.start_milestone(created.transaction_id, milestone_id, seller)
        service.approve_milestone(created.transaction_id, milestone_id, buyer)
        service.approve_milestone(created.transaction_id, milestone_id, buyer)

        approvals = [n for n in received if n.event_type == NotificationType.MILESTONE_APPROVED]
        assert len(approvals) == 1

    def test_cancellation_events(self, service, created, received, buyer, seller):
        milestone_id = created.milestone_ids[0]
        service.request_cancellation(created.transaction_id, milestone_id, buyer)
        service.request_cancellation(created.transaction_id, milestone_id, seller)

        assert [n.event_type for n in received if n.milestone_id == milestone_id] == [
            NotificationType.CANCELLATION_REQUESTED,
            NotificationType.MILESTONE_CANCELLED,
        ]
        assert received[-2].payload == {"role": "buyer"}

    def test_subscription_by_event_type(self, service, notifier, created, buyer):
        opened: list[Notification] = []
        notifier.subscribe(opened.append, NotificationType.DISPUTE_OPENED)

        service.open_dispute(created.transaction_id, created.milestone_ids[0], buyer, "late")
        service.request_cancellation(created.transaction_id, created.milestone_ids[1], buyer)

        assert [n.event_type for n in opened] == [NotificationType.DISPUTE_OPENED]

    def test_unsubscribe(self, service, notifier, received, created, buyer):
        notifier.unsubscribe(received.append)
        service.open_dispute(created.transaction_id, created.milestone_ids[0], buyer, "late")
        assert NotificationType.DISPUTE_OPENED not in {n.event_type for n in received}


class TestFailureIsolation:

    def test_failing_notifier_does_not_roll_back(
        self, make_service, store, buyer, seller, draft_factory, captured_logs,
    ):
        service = make_service(store, notifier_override=_ExplodingNotifier())
        created = service.create_transaction(buyer, draft_factory())
        milestone_id = created.milestone_ids[0]
        service.start_milestone(created.transaction_id, milestone_id, seller)

        outcome = service.approve_milestone(created.transaction_id, milestone_id, buyer)

        assert outcome.released
        view = service.get_transaction(created.transaction_id)
        assert view.milestones[0].status == MilestoneStatus.COMPLETED
        assert view.custody[milestone_id].released == Decimal("400.00")

        failures = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert len(failures) == 3
        assert failures[0]["exc_type"] == "RuntimeError"

    def test_failing_subscriber_does_not_starve_others(self, service, notifier, created, buyer):
        delivered: list[Notification] = []

        def _boom(notification):
            raise ValueError("bad webhook")

        notifier.subscribe(_boom)
        notifier.subscribe(delivered.append)

        service.open_dispute(created.transaction_id, created.milestone_ids[0], buyer, "late")

        assert [n.event_type for n in delivered] == [NotificationType.DISPUTE_OPENED]

    def test_null_notifier_accepts_everything(self, deterministic_clock, buyer):
        safe_emit(
            NullNotifier(),
            Notification(
                event_type=NotificationType.TRANSACTION_CREATED,
                transaction_id=uuid4(),
                actor_id=buyer.actor_id,
                occurred_at=deterministic_clock.now(),
            ),
        )

    def test_subscription_notifier_without_subscribers(self, deterministic_clock, buyer):
        SubscriptionNotifier().emit(
            Notification(
                event_type=NotificationType.DISPUTE_CLOSED,
                transaction_id=uuid4(),
                actor_id=buyer.actor_id,
                occurred_at=deterministic_clock.now(),
            )
        )
