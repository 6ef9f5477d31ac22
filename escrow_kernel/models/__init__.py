"""SQLAlchemy ORM models for the escrow kernel."""

from escrow_kernel.models.dispute import DisputeModel
from escrow_kernel.models.escrow import MilestoneModel, TransactionModel
from escrow_kernel.models.ledger import LedgerEntryModel

__all__ = [
    "DisputeModel",
    "LedgerEntryModel",
    "MilestoneModel",
    "TransactionModel",
]
