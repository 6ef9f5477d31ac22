"""
escrow_config -- single public entrypoint for escrow policy configuration.

Responsibility:
    Provides the ONLY way to obtain the escrow policy at runtime through
    ``get_active_policy()``.  Services receive the returned ``EscrowPolicy``
    by constructor injection; the kernel never reads configuration files.

Architecture position:
    Configuration.  Sits above ``escrow_kernel``; the kernel MUST NEVER
    import from ``escrow_config``.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_policy()``.
    - Deterministic: the same YAML always produces the same policy and checksum.

Failure modes:
    - ``FileNotFoundError`` -- no ``<name>.yaml`` in the configuration directory.
    - ``ValueError`` / ``KeyError`` -- invalid or incomplete policy file.

Audit relevance:
    Every successful call emits an ``ESCROW_CONFIG_TRACE`` log entry with
    the policy name, version, checksum and the effective settings, tying
    each settlement back to the policy that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from escrow_config.loader import compute_checksum, load_yaml_file, parse_policy
from escrow_kernel.domain.policy import EscrowPolicy

_logger = logging.getLogger("escrow_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_policy(
    config_dir: Path | None = None,
    name: str = "default",
) -> EscrowPolicy:
    """The ONLY public configuration entrypoint.

    Args:
        config_dir: Override path to the configuration sets directory.
            Defaults to escrow_config/sets/.
        name: Policy file stem; ``default`` loads ``default.yaml``.

    Returns:
        The parsed, validated ``EscrowPolicy``.

    Raises:
        FileNotFoundError: If the policy file does not exist.
        ValueError: If the policy fails validation.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Escrow policy not found: {path}")

    data = load_yaml_file(path)
    policy = parse_policy(data)
    checksum = compute_checksum(data)

    _logger.info(
        "ESCROW_CONFIG_TRACE",
        extra={
            "trace_type": "ESCROW_CONFIG_TRACE",
            "policy_name": policy.policy_name,
            "policy_version": policy.version,
            "checksum": checksum,
            "broker_may_approve": policy.broker_may_approve,
            "broker_may_resolve": policy.broker_may_resolve,
            "broker_fee_rate": str(policy.broker_fee.rate),
            "amount_tolerance": str(policy.amount_tolerance),
        },
    )
    return policy


__all__ = [
    "EscrowPolicy",
    "compute_checksum",
    "get_active_policy",
]
