"""Tests for policy validation and YAML loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from stream_ingest.policy import Policy, Severity, has_errors, load_policy, policy_from_dict, validate_policy


class TestValidatePolicy:
    def test_empty_policy_is_valid(self):
        assert validate_policy({}) == []

    @pytest.mark.parametrize("value", [0, -5, "10", True, 1.5])
    def test_limits_must_be_positive_integers(self, value):
        issues = validate_policy({"max_section_size": value})
        assert has_errors(issues)
        assert issues[0].field == "max_section_size"

    def test_section_larger_than_body_is_warning(self):
        issues = validate_policy({"max_body_size": 10, "max_section_size": 20})
        assert not has_errors(issues)
        assert issues[0].severity == Severity.WARNING

    def test_ceiling_below_body_limit(self):
        issues = validate_policy({"max_body_size": 100, "hard_body_ceiling": 50})
        assert any(i.field == "hard_body_ceiling" for i in issues if i.severity == Severity.ERROR)

    def test_empty_extension_list_is_warning(self):
        issues = validate_policy({"permitted_extensions": []})
        assert [i.severity for i in issues] == [Severity.WARNING]

    def test_bad_signature_hex(self):
        issues = validate_policy({"signature_table": {".bin": ["zz"]}})
        assert has_errors(issues)
        assert issues[0].field == "signature_table..bin"

    def test_bad_scan_timeout(self):
        assert has_errors(validate_policy({"scan_timeout": 0}))


class TestPolicy:
    def test_normalizes_extensions(self):
        policy = Policy(permitted_extensions=frozenset({"PDF", ".Txt", " "}))
        assert policy.permitted_extensions == frozenset({".pdf", ".txt"})

    def test_body_ceiling_defaults_to_budget(self):
        assert Policy(max_body_size=10).body_ceiling == 10
        assert Policy(max_body_size=10, hard_body_ceiling=20).body_ceiling == 20

    def test_signature_length(self):
        policy = Policy()
        assert policy.signature_length(".png") == 8
        assert policy.signature_length("PDF") == 5
        assert policy.signature_length(".txt") == 0

    def test_public_dict_has_no_signature_bytes(self):
        public = Policy().to_public_dict()
        assert ".docx" in public["signature_extensions"]
        assert all(isinstance(ext, str) for ext in public["permitted_extensions"])


class TestPolicyFromDict:
    def test_overrides_and_extends_signatures(self):
        policy = policy_from_dict(
            {
                "max_section_size": 1024,
                "permitted_extensions": ["bmp", "txt"],
                "signature_table": {"bmp": "42 4D"},
                "allow_empty_files": True,
            }
        )
        assert policy.max_section_size == 1024
        assert policy.permitted_extensions == frozenset({".bmp", ".txt"})
        assert policy.signatures_for(".bmp") == (b"BM",)
        assert policy.signatures_for(".png")
        assert policy.allow_empty_files

    def test_replace_signature_table(self):
        policy = policy_from_dict({"signature_table": {".bmp": ["424d"]}, "extend_default_signatures": False})
        assert set(policy.signature_table) == {".bmp"}

    def test_invalid_raises(self):
        with pytest.raises(ValueError, match="max_body_size"):
            policy_from_dict({"max_body_size": -1})


def test_load_policy_yaml(tmp_path: Path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "max_body_size: 1048576\n"
        "max_section_size: 65536\n"
        "scan_timeout: 5\n"
        "permitted_extensions: [.pdf, .png]\n"
    )
    policy = load_policy(str(path))
    assert policy.max_body_size == 1048576
    assert policy.max_section_size == 65536
    assert policy.scan_timeout == 5.0
    assert policy.permitted_extensions == frozenset({".pdf", ".png"})


def test_load_policy_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_policy(str(tmp_path / "absent.yaml"))


def test_load_policy_requires_mapping(tmp_path: Path):
    path = tmp_path / "policy.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_policy(str(path))
