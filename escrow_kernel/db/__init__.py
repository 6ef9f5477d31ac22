"""Database layer - engine, base classes, column types, and immutability."""

from escrow_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from escrow_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from escrow_kernel.db.types import Currency, IdempotencyKey, LongText, Money, ShortCode

__all__ = [
    "Base",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "Currency",
    "IdempotencyKey",
    "LongText",
    "Money",
    "ShortCode",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "session_scope",
]
