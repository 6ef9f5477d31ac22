"""
Escrow policy configuration: YAML loading, validation and the config trace.
"""

from decimal import Decimal

import pytest
import yaml

from escrow_config import compute_checksum, get_active_policy
from escrow_config.loader import load_policy, parse_policy
from escrow_kernel.domain.policy import EscrowPolicy


def _write(tmp_path, name, data):
    path = tmp_path / f"{name}.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultPolicy:

    def test_shipped_default_matches_kernel_default(self):
        policy = get_active_policy()

        assert policy.policy_name == "default"
        assert policy.version == 1
        assert policy.broker_may_approve is False
        assert policy.broker_may_resolve is True
        assert policy.broker_fee.rate == Decimal("0.00")
        assert policy.amount_tolerance == Decimal("0.01")
        assert policy.default_currency == "USD"

    def test_trace_logged(self, captured_logs):
        get_active_policy()

        traces = [r for r in captured_logs() if r["message"] == "ESCROW_CONFIG_TRACE"]
        assert len(traces) == 1
        assert traces[0]["policy_name"] == "default"
        assert len(traces[0]["checksum"]) == 64
        assert traces[0]["broker_fee_rate"] == "0.00"


class TestCustomPolicy:

    def test_loads_from_directory(self, tmp_path):
        _write(tmp_path, "marketplace", {
            "policy_name": "marketplace",
            "version": 3,
            "approval": {"broker_may_approve": True},
            "disputes": {"broker_may_resolve": False},
            "broker_fee": {"rate": "0.025"},
            "amounts": {"tolerance": "0.05", "default_currency": "eur"},
        })

        policy = get_active_policy(config_dir=tmp_path, name="marketplace")

        assert policy == EscrowPolicy(
            policy_name="marketplace",
            version=3,
            broker_may_approve=True,
            broker_may_resolve=False,
            broker_fee=policy.broker_fee,
            amount_tolerance=Decimal("0.05"),
            default_currency="EUR",
        )
        assert policy.broker_fee.rate == Decimal("0.025")

    def test_yaml_float_keeps_written_value(self, tmp_path):
        path = tmp_path / "floaty.yaml"
        path.write_text("policy_name: floaty\nbroker_fee:\n  rate: 0.1\n")
        assert load_policy(path).broker_fee.rate == Decimal("0.1")

    def test_omitted_sections_use_defaults(self):
        policy = parse_policy({"policy_name": "bare"})
        assert policy == EscrowPolicy(policy_name="bare")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_policy(config_dir=tmp_path, name="nope")


class TestValidation:

    @pytest.mark.parametrize("data", [
        {"policy_name": "x", "refunds": {}},
        {"policy_name": "x", "version": 0},
        {"policy_name": "x", "version": "2"},
        {"policy_name": "x", "amounts": {"tolerance": "0"}},
        {"policy_name": "x", "amounts": {"tolerance": "lots"}},
        {"policy_name": "x", "amounts": {"default_currency": "ZZZ"}},
        {"policy_name": "x", "broker_fee": {"rate": "1.5"}},
        {"policy_name": "x", "broker_fee": {"rate": True}},
        {"policy_name": "x", "approval": {"broker_may_approve": "yes"}},
    ])
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ValueError):
            parse_policy(data)

    def test_policy_name_required(self):
        with pytest.raises(KeyError):
            parse_policy({"version": 1})


class TestChecksum:

    def test_deterministic_and_key_order_independent(self):
        a = {"policy_name": "p", "amounts": {"tolerance": "0.01", "default_currency": "USD"}}
        b = {"amounts": {"default_currency": "USD", "tolerance": "0.01"}, "policy_name": "p"}
        assert compute_checksum(a) == compute_checksum(b)

    def test_changes_with_content(self):
        assert compute_checksum({"policy_name": "p"}) != compute_checksum({"policy_name": "q"})
