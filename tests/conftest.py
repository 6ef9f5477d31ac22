"""
Pytest fixtures for the escrow kernel test suite.

Provides:
- Structured-logging setup and a JSON log capture fixture
- Actors for every party role
- In-memory and SQLite-backed ledger stores
- TransactionService factories and the standard 1000.00 = [400.00, 600.00]
  transaction
"""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

from escrow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from escrow_kernel.domain.clock import DeterministicClock
from escrow_kernel.domain.escrow import (
    ADMIN_ROLE,
    Actor,
    MilestoneSpec,
    TransactionDraft,
)
from escrow_kernel.domain.policy import EscrowPolicy
from escrow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from escrow_kernel.services.notifier import SubscriptionNotifier
from escrow_kernel.services.transaction_service import TransactionService
from escrow_kernel.store.memory import InMemoryLedgerStore
from escrow_kernel.store.sql import SqlLedgerStore


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture escrow_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.approve_milestone(...)
            logs = captured_logs()
            assert any(r["message"] == "milestone_approved" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("escrow_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "sql: test runs against the SQLAlchemy store (SQLite)"
    )


# =============================================================================
# Parties
# =============================================================================


@pytest.fixture
def buyer() -> Actor:
    return Actor(actor_id=uuid4())


@pytest.fixture
def seller() -> Actor:
    return Actor(actor_id=uuid4())


@pytest.fixture
def broker() -> Actor:
    return Actor(actor_id=uuid4())


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id=uuid4(), roles=frozenset({ADMIN_ROLE}))


@pytest.fixture
def outsider() -> Actor:
    return Actor(actor_id=uuid4())


# =============================================================================
# Clock and policy
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def policy() -> EscrowPolicy:
    return EscrowPolicy()


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def memory_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def sql_store():
    """SqlLedgerStore over a fresh in-memory SQLite database."""
    init_engine_from_url("sqlite://")
    create_tables()
    yield SqlLedgerStore(get_session_factory())
    drop_tables()
    reset_engine()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Run the test once per LedgerStore adapter."""
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sql_store")


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def notifier() -> SubscriptionNotifier:
    return SubscriptionNotifier()


@pytest.fixture
def make_service(deterministic_clock, policy, notifier):
    """Factory: TransactionService over a given store/policy."""

    def _make(store=None, policy_override: EscrowPolicy | None = None, notifier_override=None):
        return TransactionService(
            store if store is not None else InMemoryLedgerStore(),
            clock=deterministic_clock,
            policy=policy_override or policy,
            notifier=notifier_override or notifier,
        )

    return _make


@pytest.fixture
def service(make_service, store) -> TransactionService:
    """TransactionService over each store adapter."""
    return make_service(store)


def make_draft(
    buyer_id: UUID,
    seller_id: UUID,
    amount: str = "1000.00",
    milestones: tuple[str, ...] = ("400.00", "600.00"),
    broker_id: UUID | None = None,
    currency: str = "USD",
) -> TransactionDraft:
    """Draft with one milestone per amount string."""
    return TransactionDraft(
        buyer_id=buyer_id,
        seller_id=seller_id,
        broker_id=broker_id,
        amount=Decimal(amount),
        currency=currency,
        title="Website build",
        milestones=tuple(
            MilestoneSpec(title=f"Milestone {i + 1}", amount=Decimal(a))
            for i, a in enumerate(milestones)
        ),
    )


@pytest.fixture
def draft_factory(buyer, seller):
    """Factory for drafts between the buyer and seller fixtures."""

    def _draft(**kwargs) -> TransactionDraft:
        return make_draft(buyer.actor_id, seller.actor_id, **kwargs)

    return _draft


@pytest.fixture
def created(service, buyer, draft_factory):
    """The standard transaction: 1000.00 split into 400.00 and 600.00."""
    return service.create_transaction(buyer, draft_factory())
