"""
Configuration Loader (``escrow_config.loader``).

Responsibility
--------------
Loads an escrow policy YAML file and parses it into the kernel's frozen
``EscrowPolicy``.  The single runtime entry point is
``escrow_config.get_active_policy()``; this module is the tooling behind it.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; unknown sections are rejected rather than ignored.
* Decimal settings are read through ``str`` so YAML floats such as
  ``0.025`` keep their written value.
* ``compute_checksum`` is a deterministic SHA-256 of the canonical JSON form.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``policy_name``  -> ``KeyError``.
* Out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from escrow_kernel.domain.policy import BrokerFeePolicy, EscrowPolicy
from escrow_kernel.domain.values import validate_currency
from escrow_kernel.exceptions import InvalidCurrencyError

KNOWN_SECTIONS = frozenset({
    "policy_name",
    "version",
    "approval",
    "disputes",
    "broker_fee",
    "amounts",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{field}: expected a decimal, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{field}: expected a decimal, got {value!r}") from exc


def parse_bool(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{field}: expected true/false, got {value!r}")
    return value


def parse_policy(data: dict[str, Any]) -> EscrowPolicy:
    """
    Parse an ``EscrowPolicy`` from a dict.

    Raises:
        KeyError: ``policy_name`` is missing.
        ValueError: Unknown section or invalid value.
    """
    unknown = set(data) - KNOWN_SECTIONS
    if unknown:
        raise ValueError(f"Unknown policy sections: {', '.join(sorted(unknown))}")

    approval = data.get("approval") or {}
    disputes = data.get("disputes") or {}
    broker_fee = data.get("broker_fee") or {}
    amounts = data.get("amounts") or {}

    version = data.get("version", 1)
    if not isinstance(version, int) or version < 1:
        raise ValueError(f"version: expected a positive integer, got {version!r}")

    tolerance = parse_decimal(amounts.get("tolerance", "0.01"), "amounts.tolerance")
    if tolerance <= 0:
        raise ValueError(f"amounts.tolerance must be positive, got {tolerance}")

    try:
        currency = validate_currency(amounts.get("default_currency", "USD"))
    except InvalidCurrencyError as exc:
        raise ValueError(f"amounts.default_currency: {exc}") from exc

    return EscrowPolicy(
        policy_name=data["policy_name"],
        version=version,
        broker_may_approve=parse_bool(
            approval.get("broker_may_approve", False), "approval.broker_may_approve",
        ),
        broker_may_resolve=parse_bool(
            disputes.get("broker_may_resolve", True), "disputes.broker_may_resolve",
        ),
        broker_fee=BrokerFeePolicy(
            rate=parse_decimal(broker_fee.get("rate", "0"), "broker_fee.rate"),
        ),
        amount_tolerance=tolerance,
        default_currency=currency,
    )


def load_policy(path: Path) -> EscrowPolicy:
    """Load and parse a policy YAML file."""
    return parse_policy(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
