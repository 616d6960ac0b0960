"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigError
from tools.config_validator import PolicySchema, load_policy, validate_policy, validate_sanity_checks

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def write_policy(tmp_path, config) -> Path:
    with open(tmp_path / "policy.yaml", "w") as f:
        if isinstance(config, str):
            f.write(config)
        else:
            yaml.safe_dump(config, f)
    return tmp_path


class TestPolicyValidation:
    """Test policy.yaml validation"""

    def test_shipped_policy_is_valid(self):
        assert validate_policy(REPO_CONFIG) == []

    def test_empty_file_uses_defaults(self, tmp_path):
        policy = load_policy(write_policy(tmp_path, ""))
        assert policy["allocator"]["max_position_pct"] == 0.03
        assert policy["allocator"]["min_price_cents"] == 90
        assert policy["stop_loss"]["threshold"] == 0.75
        assert policy["rebalance"]["cancel_after_minutes"] == 240

    def test_partial_section_keeps_other_defaults(self, tmp_path):
        policy = load_policy(write_policy(tmp_path, {"allocator": {"max_position_pct": 0.05}}))
        assert policy["allocator"]["max_position_pct"] == 0.05
        assert policy["allocator"]["min_price_cents"] == 90

    def test_position_cap_out_of_range(self, tmp_path):
        errors = validate_policy(write_policy(tmp_path, {"allocator": {"max_position_pct": 1.5}}))
        assert len(errors) == 1
        assert "allocator -> max_position_pct" in errors[0]

    def test_inverted_price_band(self, tmp_path):
        errors = validate_policy(write_policy(tmp_path, {"allocator": {"min_price_cents": 95, "max_price_cents": 92}}))
        assert any("max_price_cents" in e for e in errors)

    def test_cancel_window_must_follow_improve_window(self, tmp_path):
        errors = validate_policy(write_policy(tmp_path, {"rebalance": {"improve_after_minutes": 120, "cancel_after_minutes": 60}}))
        assert any("cancel_after_minutes" in e for e in errors)

    def test_bad_severity(self, tmp_path):
        errors = validate_policy(write_policy(tmp_path, {"alerts": {"min_severity": "loud"}}))
        assert any("alerts -> min_severity" in e for e in errors)

    def test_missing_file(self, tmp_path):
        errors = validate_policy(tmp_path)
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml_reports_line(self, tmp_path):
        errors = validate_policy(write_policy(tmp_path, "allocator:\n  max_position_pct: [0.03\n"))
        assert "Invalid YAML" in errors[0]
        assert "line" in errors[0]

    def test_load_policy_raises(self, tmp_path):
        with pytest.raises(ConfigError) as excinfo:
            load_policy(write_policy(tmp_path, {"stop_loss": {"threshold": 2}}))
        assert excinfo.value.errors


class TestSanityChecks:

    def test_defaults_are_consistent(self):
        assert validate_sanity_checks(PolicySchema()) == []

    def test_threshold_above_price_floor(self):
        policy = PolicySchema(stop_loss={"threshold": 0.92}, allocator={"min_price_cents": 90})
        errors = validate_sanity_checks(policy)
        assert len(errors) == 1
        assert errors[0].startswith("UNSAFE")

    def test_improbable_band_inverted(self):
        policy = PolicySchema(stop_loss={"improbable_below": 96, "improbable_above": 95})
        errors = validate_sanity_checks(policy)
        assert errors[0].startswith("CONTRADICTION")
