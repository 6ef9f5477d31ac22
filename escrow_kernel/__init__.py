"""
Escrow Kernel - milestone settlement engine

A three-party escrow engine with:
- Milestone lifecycle state machine
- Append-only custody ledger (hold / release / refund)
- At-most-once release under concurrent approvals
- Version-fenced compare-and-swap persistence
- Dispute workflow with ledger-affecting resolutions
"""

__version__ = "0.1.0"
