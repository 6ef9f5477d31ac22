"""Read-only selectors."""

from escrow_kernel.selectors.escrow_selector import EscrowSelector, TransactionView

__all__ = ["EscrowSelector", "TransactionView"]
