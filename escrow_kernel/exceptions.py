"""
Typed Exception Hierarchy for the Escrow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The UI/API layer that drives this engine must react differently to each
failure kind: a ``ConflictError`` is silently retried once, everything else is
surfaced to the user.  Parsing message strings for that decision is fragile,
so every error has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        service.approve_milestone(txn_id, milestone_id, actor)
    except ConflictError:
        reload_and_resubmit()
    except EscrowKernelError as e:
        api_response(code=e.code, message=str(e))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EscrowKernelError (base)
    |
    +-- ValidationError
    |   +-- EmptyMilestonesError
    |   +-- NonPositiveAmountError
    |   +-- AmountMismatchError
    |   +-- DuplicatePartyError
    |   +-- InvalidResolutionError
    |   +-- InvalidCurrencyError
    |
    +-- NotFoundError
    |   +-- TransactionNotFoundError
    |   +-- MilestoneNotFoundError
    |   +-- DisputeNotFoundError
    |
    +-- ForbiddenError
    |
    +-- InvalidStateError
    |   +-- InvalidMilestoneTransitionError
    |   +-- InvalidDisputeTransitionError
    |   +-- DisputeAlreadyOpenError
    |
    +-- ConcurrencyError
    |   +-- ConflictError
    |   +-- VersionConflictError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|-----------------------------------
Validation   | EMPTY_MILESTONES              | Transaction created with no milestones
             | NON_POSITIVE_AMOUNT           | Zero/negative transaction or milestone
             | AMOUNT_MISMATCH               | Milestone sum != transaction amount
             | INVALID_RESOLUTION            | Split shares don't sum to milestone
             | INVALID_CURRENCY              | Not an ISO 4217 code
-------------|-------------------------------|-----------------------------------
Not found    | TRANSACTION_NOT_FOUND         | Unknown transaction id
             | MILESTONE_NOT_FOUND           | Unknown milestone id for transaction
             | DISPUTE_NOT_FOUND             | Unknown dispute id
-------------|-------------------------------|-----------------------------------
Forbidden    | FORBIDDEN                     | Actor lacks role for the operation
-------------|-------------------------------|-----------------------------------
State        | INVALID_MILESTONE_TRANSITION  | Milestone status forbids operation
             | INVALID_DISPUTE_TRANSITION    | Dispute status forbids operation
-------------|-------------------------------|-----------------------------------
Concurrency  | CONFLICT                      | Lost a race, reload and resubmit
             | VERSION_CONFLICT              | Store CAS saw a stale version
-------------|-------------------------------|-----------------------------------
Immutability | IMMUTABILITY_VIOLATION        | Ledger entry UPDATE/DELETE attempted

===============================================================================
PROPAGATION
===============================================================================

All kinds are terminal for the calling request; the engine never retries.
``VersionConflictError`` is internal to the store contract: the coordinator
and resolver translate it into idempotent success or ``ConflictError``.
"""

from decimal import Decimal


class EscrowKernelError(Exception):
    """
    Base exception for all escrow kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "ESCROW_KERNEL_ERROR"


# Validation exceptions


class ValidationError(EscrowKernelError):
    """Malformed or invariant-violating input, caught before any mutation."""

    code: str = "VALIDATION_ERROR"


class EmptyMilestonesError(ValidationError):
    """A transaction must carry at least one milestone."""

    code: str = "EMPTY_MILESTONES"

    def __init__(self):
        super().__init__("Transaction must have at least one milestone")


class NonPositiveAmountError(ValidationError):
    """Transaction or milestone amount is zero or negative."""

    code: str = "NON_POSITIVE_AMOUNT"

    def __init__(self, field: str, amount: Decimal):
        self.field = field
        self.amount = amount
        super().__init__(f"{field} must be positive, got {amount}")


class AmountMismatchError(ValidationError):
    """Milestone amounts do not sum to the transaction amount."""

    code: str = "AMOUNT_MISMATCH"

    def __init__(self, transaction_amount: Decimal, milestone_total: Decimal):
        self.transaction_amount = transaction_amount
        self.milestone_total = milestone_total
        super().__init__(
            f"Milestone amounts sum to {milestone_total}, "
            f"transaction amount is {transaction_amount}"
        )


class DuplicatePartyError(ValidationError):
    """Buyer, seller and broker must be three different actors."""

    code: str = "DUPLICATE_PARTY"

    def __init__(self, party_id: str, roles: tuple[str, ...]):
        self.party_id = party_id
        self.roles = roles
        super().__init__(f"Actor {party_id} cannot be both {' and '.join(roles)}")


class InvalidResolutionError(ValidationError):
    """Dispute resolution shares are negative or don't sum to the milestone amount."""

    code: str = "INVALID_RESOLUTION"

    def __init__(self, dispute_id: str, reason: str):
        self.dispute_id = dispute_id
        self.reason = reason
        super().__init__(f"Invalid resolution for dispute {dispute_id}: {reason}")


class InvalidCurrencyError(ValidationError):
    """Currency is not a recognized ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: '{currency}'")


# Not-found exceptions


class NotFoundError(EscrowKernelError):
    """Unknown identifier."""

    code: str = "NOT_FOUND"


class TransactionNotFoundError(NotFoundError):
    """Transaction with given ID was not found."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class MilestoneNotFoundError(NotFoundError):
    """Milestone does not exist or does not belong to the transaction."""

    code: str = "MILESTONE_NOT_FOUND"

    def __init__(self, transaction_id: str, milestone_id: str):
        self.transaction_id = transaction_id
        self.milestone_id = milestone_id
        super().__init__(
            f"Milestone {milestone_id} not found in transaction {transaction_id}"
        )


class DisputeNotFoundError(NotFoundError):
    """Dispute with given ID was not found."""

    code: str = "DISPUTE_NOT_FOUND"

    def __init__(self, dispute_id: str):
        self.dispute_id = dispute_id
        super().__init__(f"Dispute not found: {dispute_id}")


# Authorization


class ForbiddenError(EscrowKernelError):
    """Actor lacks the role required for the operation."""

    code: str = "FORBIDDEN"

    def __init__(self, actor_id: str, operation: str, reason: str = ""):
        self.actor_id = actor_id
        self.operation = operation
        self.reason = reason
        message = f"Actor {actor_id} may not {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# State exceptions


class InvalidStateError(EscrowKernelError):
    """Operation is not legal from the current milestone/dispute state."""

    code: str = "INVALID_STATE"


class InvalidMilestoneTransitionError(InvalidStateError):
    """Milestone status does not allow the requested transition."""

    code: str = "INVALID_MILESTONE_TRANSITION"

    def __init__(self, milestone_id: str, from_status: str, to_status: str):
        self.milestone_id = milestone_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Milestone {milestone_id} cannot move from '{from_status}' "
            f"to '{to_status}'"
        )


class InvalidDisputeTransitionError(InvalidStateError):
    """Dispute status does not allow the requested transition."""

    code: str = "INVALID_DISPUTE_TRANSITION"

    def __init__(self, dispute_id: str, from_status: str, to_status: str):
        self.dispute_id = dispute_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Dispute {dispute_id} cannot move from '{from_status}' "
            f"to '{to_status}'"
        )


class DisputeAlreadyOpenError(InvalidStateError):
    """The milestone already has an open or under-review dispute."""

    code: str = "DISPUTE_ALREADY_OPEN"

    def __init__(self, milestone_id: str, dispute_id: str):
        self.milestone_id = milestone_id
        self.dispute_id = dispute_id
        super().__init__(f"Milestone {milestone_id} is already under dispute {dispute_id}")


# Concurrency exceptions


class ConcurrencyError(EscrowKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConflictError(ConcurrencyError):
    """
    Lost an optimistic-concurrency race that is not an idempotent success.

    The only error kind callers are expected to retry (reload and resubmit).
    """

    code: str = "CONFLICT"

    def __init__(self, milestone_id: str, observed_status: str):
        self.milestone_id = milestone_id
        self.observed_status = observed_status
        super().__init__(
            f"Concurrent modification of milestone {milestone_id}; "
            f"now '{observed_status}'"
        )


class VersionConflictError(ConcurrencyError):
    """Compare-and-swap presented a stale version."""

    code: str = "VERSION_CONFLICT"

    def __init__(self, milestone_id: str, expected_version: int, actual_version: int):
        self.milestone_id = milestone_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on milestone {milestone_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


# Immutability exceptions


class ImmutabilityError(EscrowKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only ledger record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
