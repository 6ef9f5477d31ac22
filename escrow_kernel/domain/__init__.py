"""
Pure domain layer.

Value objects and state machines with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Time/clock (beyond the injectable Clock interface)
- I/O

All domain objects are immutable and deterministic.
"""

from escrow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from escrow_kernel.domain.custody import (
    Beneficiary,
    CustodyTotals,
    CustodyViolation,
    EntryKind,
    LedgerEntry,
    Payout,
)
from escrow_kernel.domain.dispute import (
    Dispute,
    DisputeStatus,
    Resolution,
    ResolutionKind,
)
from escrow_kernel.domain.escrow import (
    Actor,
    CreatedTransaction,
    Milestone,
    MilestoneChange,
    MilestoneSpec,
    PartyRole,
    Transaction,
    TransactionDraft,
    TransactionRecord,
)
from escrow_kernel.domain.milestone_machine import (
    MilestoneStatus,
    MilestoneTrigger,
    TransactionStatus,
)
from escrow_kernel.domain.policy import BrokerFeePolicy, EscrowPolicy

__all__ = [
    "Actor",
    "Beneficiary",
    "BrokerFeePolicy",
    "Clock",
    "CreatedTransaction",
    "CustodyTotals",
    "CustodyViolation",
    "DeterministicClock",
    "Dispute",
    "DisputeStatus",
    "EntryKind",
    "EscrowPolicy",
    "LedgerEntry",
    "Milestone",
    "MilestoneChange",
    "MilestoneSpec",
    "MilestoneStatus",
    "MilestoneTrigger",
    "PartyRole",
    "Payout",
    "Resolution",
    "ResolutionKind",
    "SystemClock",
    "Transaction",
    "TransactionDraft",
    "TransactionRecord",
    "TransactionStatus",
]
