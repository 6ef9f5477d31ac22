"""Escrow kernel services."""

from escrow_kernel.services.approval_coordinator import ApprovalCoordinator, ApprovalOutcome
from escrow_kernel.services.custody_ledger import FundCustodyLedger
from escrow_kernel.services.dispute_resolver import DisputeResolver, ResolutionOutcome
from escrow_kernel.services.notifier import (
    Notification,
    NotificationEmitter,
    NotificationType,
    NullNotifier,
    SubscriptionNotifier,
)
from escrow_kernel.services.transaction_service import CancellationOutcome, TransactionService

__all__ = [
    "ApprovalCoordinator",
    "ApprovalOutcome",
    "CancellationOutcome",
    "DisputeResolver",
    "FundCustodyLedger",
    "Notification",
    "NotificationEmitter",
    "NotificationType",
    "NullNotifier",
    "ResolutionOutcome",
    "SubscriptionNotifier",
    "TransactionService",
]
