"""
Module: escrow_kernel.db.types
Responsibility: Annotated type aliases for money, currency and text columns so
    that every model uses identical column definitions.
Architecture position: Kernel > DB.  May be imported by models/.  MUST NOT
    import from services/, store/, selectors/, or domain/.

Invariants enforced:
    CRITICAL: No floats anywhere.  Monetary columns are Numeric(38, 9) and map
    to Decimal.  Rounding and currency validation live in domain/values.py.
"""

from decimal import Decimal
from typing import Annotated

from sqlalchemy import Numeric, String


# Monetary amount, 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code (e.g., "USD", "EUR", "GBP")
Currency = Annotated[str, String(3)]

# Short identifier strings (statuses, kinds, roles)
ShortCode = Annotated[str, String(50)]

# Long text for titles, descriptions, dispute reasons
LongText = Annotated[str, String(4000)]

# Ledger idempotency key: transaction:milestone:kind:beneficiary
IdempotencyKey = Annotated[str, String(200)]
