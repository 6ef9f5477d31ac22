"""
escrow_kernel.services.notifier -- Fire-and-forget transition notifications.

Responsibility:
    Defines the NotificationEmitter port the services call after a state
    change has committed, plus two in-process implementations: a no-op
    default and a subscription fan-out (callers register per event type,
    e.g. to forward to webhooks or e-mail).

Invariants enforced:
    - Notifications are emitted only after the compare-and-swap and ledger
      append they describe have completed.
    - An emitter failure is logged (``notification_failed``) and never
      propagates; it cannot roll back or fail the operation.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from escrow_kernel.logging_config import get_logger

logger = get_logger("services.notifier")


class NotificationType(str, Enum):
    TRANSACTION_CREATED = "transaction_created"
    MILESTONE_STARTED = "milestone_started"
    MILESTONE_APPROVED = "milestone_approved"
    CANCELLATION_REQUESTED = "cancellation_requested"
    MILESTONE_CANCELLED = "milestone_cancelled"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_UNDER_REVIEW = "dispute_under_review"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_CLOSED = "dispute_closed"


@dataclass(frozen=True)
class Notification:
    event_type: NotificationType
    transaction_id: UUID
    actor_id: UUID
    occurred_at: datetime
    milestone_id: UUID | None = None
    dispute_id: UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationEmitter(Protocol):
    """Port for delivering committed-transition notifications."""

    def emit(self, notification: Notification) -> None: ...


class NullNotifier:
    """Default: drop every notification."""

    def emit(self, notification: Notification) -> None:
        return None


Subscriber = Callable[[Notification], None]

ALL_EVENTS = "*"


class SubscriptionNotifier:
    """Fans each notification out to the subscribers of its event type.

    Subscribers registered under ``"*"`` receive everything.  One failing
    subscriber does not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(
        self,
        callback: Subscriber,
        event_type: NotificationType | str = ALL_EVENTS,
    ) -> None:
        key = event_type.value if isinstance(event_type, NotificationType) else event_type
        with self._lock:
            self._subscribers[key].append(callback)

    def unsubscribe(
        self,
        callback: Subscriber,
        event_type: NotificationType | str = ALL_EVENTS,
    ) -> None:
        key = event_type.value if isinstance(event_type, NotificationType) else event_type
        with self._lock:
            if callback in self._subscribers.get(key, []):
                self._subscribers[key].remove(callback)

    def emit(self, notification: Notification) -> None:
        with self._lock:
            targets = (
                list(self._subscribers.get(notification.event_type.value, ()))
                + list(self._subscribers.get(ALL_EVENTS, ()))
            )
        for callback in targets:
            safe_emit(_CallbackEmitter(callback), notification)


@dataclass(frozen=True)
class _CallbackEmitter:
    callback: Subscriber

    def emit(self, notification: Notification) -> None:
        self.callback(notification)


def safe_emit(emitter: NotificationEmitter, notification: Notification) -> None:
    """Deliver ``notification``; log and swallow any emitter failure."""
    try:
        emitter.emit(notification)
    except Exception:
        logger.warning(
            "notification_failed",
            extra={
                "event_type": notification.event_type.value,
                "transaction_id": str(notification.transaction_id),
            },
            exc_info=True,
        )
