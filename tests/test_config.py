"""
Tests for chartguard.config -- Safety Policy Configuration.

Covers: default policy values, policy validation, duration parsing,
per-kind TTL overrides, YAML loading, and hot reload through
PolicyProvider.
"""

from datetime import time
from pathlib import Path

import pytest
import yaml

from chartguard.config import (
    DEFAULT_POLICY,
    PolicyProvider,
    RestrictedHours,
    SafetyPolicy,
    load_policy_from_yaml,
    parse_duration,
)
from chartguard.models import CommandKind, Role


def _write_policy(tmp_dir: Path, data: dict, name: str = "policy.yaml") -> Path:
    path = tmp_dir / name
    with open(path, "w") as f:
        yaml.dump({"safety_policy": data}, f)
    return path


# ---------------------------------------------------------------------------
# 1. Default policy
# ---------------------------------------------------------------------------

class TestDefaultPolicy:
    def test_default_policy_is_conservative(self):
        assert DEFAULT_POLICY.min_confidence == 0.5
        assert DEFAULT_POLICY.approval_ttl == 24 * 3600
        assert DEFAULT_POLICY.restricted_hours is None

    def test_default_policy_blocks_no_kind_outright(self):
        assert DEFAULT_POLICY.blocked_kinds == frozenset()
        assert DEFAULT_POLICY.required_approvers == 2

    def test_policy_is_frozen(self):
        with pytest.raises(Exception):
            DEFAULT_POLICY.min_confidence = 0.0


# ---------------------------------------------------------------------------
# 2. Policy validation
# ---------------------------------------------------------------------------

class TestSafetyPolicyValidation:
    def test_min_confidence_range(self):
        with pytest.raises(Exception):
            SafetyPolicy(min_confidence=1.5)

    def test_single_approver_dual_approval_rejected(self):
        with pytest.raises(Exception):
            SafetyPolicy(required_approvers=1)

    def test_kind_cannot_be_blocked_and_dual(self):
        kinds = frozenset({CommandKind.SUGGEST_MEDICATION_CHANGE})
        with pytest.raises(Exception, match="both blocked and dual-approval"):
            SafetyPolicy(blocked_kinds=kinds, dual_approval_kinds=kinds)

    def test_unknown_kind_rejected(self):
        with pytest.raises(Exception):
            SafetyPolicy(blocked_kinds=["delete_everything"])

    def test_ttl_accepts_duration_string(self):
        assert SafetyPolicy(approval_ttl="2w").approval_ttl == 2 * 604800

    def test_ttl_must_be_positive(self):
        with pytest.raises(Exception):
            SafetyPolicy(approval_ttl=0)

    def test_ttl_override_per_kind(self):
        policy = SafetyPolicy(
            approval_ttl="24h",
            approval_ttl_overrides={"suggest_billing_codes": "7d"},
        )
        assert policy.ttl_for(CommandKind.SUGGEST_BILLING_CODES) == 7 * 86400
        assert policy.ttl_for(CommandKind.CREATE_NOTE_DRAFT) == 86400

    @pytest.mark.parametrize("value,expected", [
        ("22:00", time(22)), ("7:30", time(7, 30)), (" 06:05 ", time(6, 5)), (time(3), time(3)),
    ])
    def test_restricted_hours_clock_times(self, value, expected):
        window = RestrictedHours(start=value, end="23:59")
        assert window.start == expected

    @pytest.mark.parametrize("value", [1320, 22.0, "24:00", "22h", "2200", None])
    def test_restricted_hours_rejects_non_clock_values(self, value):
        with pytest.raises(Exception):
            RestrictedHours(start=value, end="06:00")

    def test_approval_required_kinds_default(self):
        policy = SafetyPolicy()
        assert CommandKind.SUGGEST_MEDICATION_CHANGE in policy.approval_required_kinds
        assert CommandKind.SUGGEST_BILLING_CODES in policy.approval_required_kinds
        assert CommandKind.FLAG_ABNORMAL_RESULT not in policy.approval_required_kinds
        assert SafetyPolicy(approval_required_kinds=[]).approval_required_kinds == frozenset()

    def test_approver_roles_parsed(self):
        policy = SafetyPolicy(approver_roles={
            "suggest_medication_change": ["PRACTITIONER", "PHARMACIST"],
        })
        assert policy.approver_roles[CommandKind.SUGGEST_MEDICATION_CHANGE] == frozenset(
            {Role.PRACTITIONER, Role.PHARMACIST}
        )


class TestParseDuration:
    @pytest.mark.parametrize("value,seconds", [
        (90, 90), ("45s", 45), ("30m", 1800), ("24h", 86400), ("7d", 604800), (" 2w ", 1209600),
    ])
    def test_valid_durations(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["", "7", "1y", "-1h", 0, -5, True, None, "1.5h"])
    def test_invalid_durations(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


# ---------------------------------------------------------------------------
# 3. YAML loader
# ---------------------------------------------------------------------------

class TestYAMLLoader:
    def test_load_valid_yaml(self, tmp_path):
        path = _write_policy(tmp_path, {
            "name": "clinic-alpha",
            "min_confidence": 0.6,
            "blocked_kinds": ["suggest_medication_change"],
            "dual_approval_kinds": ["propose_problem_update"],
            "restricted_hours": {
                "start": "22:00", "end": "06:00",
                "exempt_kinds": ["flag_abnormal_result"],
            },
            "approval_ttl": "12h",
        })
        policy = load_policy_from_yaml(path)
        assert policy.name == "clinic-alpha"
        assert CommandKind.SUGGEST_MEDICATION_CHANGE in policy.blocked_kinds
        assert policy.restricted_hours == RestrictedHours(
            start=time(22), end=time(6),
            exempt_kinds=frozenset({CommandKind.FLAG_ABNORMAL_RESULT}),
        )
        assert policy.approval_ttl == 12 * 3600

    def test_unquoted_restricted_hours_rejected(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(
            "safety_policy:\n"
            "  restricted_hours:\n"
            "    start: 22:00\n"
            "    end: 06:00\n"
        )
        with pytest.raises(ValueError, match="HH:MM"):
            load_policy_from_yaml(path)

    def test_load_nonexistent_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_policy_from_yaml("/nonexistent/policy.yaml")

    def test_load_invalid_structure_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        with open(path, "w") as f:
            yaml.dump({"policies": []}, f)
        with pytest.raises(ValueError, match="top-level 'safety_policy'"):
            load_policy_from_yaml(path)

    def test_non_mapping_policy_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        with open(path, "w") as f:
            yaml.dump({"safety_policy": ["a", "b"]}, f)
        with pytest.raises(ValueError, match="must be a mapping"):
            load_policy_from_yaml(path)

    def test_load_bundled_example_policy(self):
        sample_path = Path(__file__).parent.parent / "examples" / "safety_policy.yaml"
        if sample_path.exists():
            policy = load_policy_from_yaml(sample_path)
            assert policy.name == "demo-clinic"
            assert CommandKind.SUGGEST_MEDICATION_CHANGE in policy.dual_approval_kinds
            assert policy.ttl_for(CommandKind.SUGGEST_BILLING_CODES) == 7 * 86400
            assert CommandKind.SUMMARIZE_PATIENT_HISTORY not in policy.approval_required_kinds
            assert policy.quiet_hours.start == time(22)


# ---------------------------------------------------------------------------
# 4. Hot reload
# ---------------------------------------------------------------------------

class TestPolicyProvider:
    def test_defaults_to_default_policy(self):
        assert PolicyProvider().current() is DEFAULT_POLICY

    def test_update_swaps_policy(self):
        provider = PolicyProvider()
        strict = SafetyPolicy(name="strict", min_confidence=0.9)
        provider.update(strict)
        assert provider.current() is strict
        assert provider.generation == 1

    def test_reload_reads_file_again(self, tmp_path):
        path = _write_policy(tmp_path, {"name": "v1", "min_confidence": 0.5})
        provider = PolicyProvider.from_yaml(path)
        snapshot = provider.current()
        assert snapshot.name == "v1"

        _write_policy(tmp_path, {"name": "v2", "min_confidence": 0.8})
        provider.reload()
        assert provider.current().name == "v2"
        # earlier snapshots are unaffected
        assert snapshot.min_confidence == 0.5

    def test_failed_reload_keeps_active_policy(self, tmp_path):
        path = _write_policy(tmp_path, {"name": "v1"})
        provider = PolicyProvider.from_yaml(path)
        _write_policy(tmp_path, {"name": "v2", "min_confidence": 7})
        with pytest.raises(Exception):
            provider.reload()
        assert provider.current().name == "v1"

    def test_reload_without_file_raises(self):
        with pytest.raises(ValueError):
            PolicyProvider().reload()
