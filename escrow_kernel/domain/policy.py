"""
Escrow policy (``escrow_kernel.domain.policy``).

Frozen configuration inputs consumed by the engine.  The kernel never reads
configuration files itself; ``escrow_config`` builds an ``EscrowPolicy``
from YAML and hands it to the services.

Delegated broker approval is deliberately a configuration input
(``broker_may_approve``) rather than a hardcoded rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from escrow_kernel.domain.values import MINOR_UNIT, ZERO, round_money


@dataclass(frozen=True)
class BrokerFeePolicy:
    """Share of every seller payout credited to the assigned broker.

    ``rate`` is a fraction (``Decimal("0.025")`` is 2.5%).  The fee is
    rounded to minor units; the seller receives the remainder, so the legs
    always sum to the payout exactly.
    """

    rate: Decimal = ZERO

    def __post_init__(self) -> None:
        if not (ZERO <= self.rate < Decimal("1")):
            raise ValueError(f"Broker fee rate must be in [0, 1), got {self.rate}")

    def split(self, payout: Decimal) -> tuple[Decimal, Decimal]:
        """Return ``(seller_amount, broker_fee)`` for a seller payout."""
        fee = round_money(payout * self.rate)
        return payout - fee, fee


@dataclass(frozen=True)
class EscrowPolicy:
    """Engine-wide policy knobs."""

    policy_name: str = "default"
    version: int = 1
    broker_may_approve: bool = False
    broker_may_resolve: bool = True
    broker_fee: BrokerFeePolicy = field(default_factory=BrokerFeePolicy)
    amount_tolerance: Decimal = MINOR_UNIT
    default_currency: str = "USD"
