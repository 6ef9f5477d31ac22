"""Ledger store: the persistence port and its adapters."""

from escrow_kernel.store.base import LedgerStore
from escrow_kernel.store.memory import InMemoryLedgerStore
from escrow_kernel.store.sql import SqlLedgerStore

__all__ = [
    "InMemoryLedgerStore",
    "LedgerStore",
    "SqlLedgerStore",
]
