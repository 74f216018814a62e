"""Tests for job payload validation."""

import pytest

from control_plane.jobs.validator import (
    REQUIRED_FIELDS,
    JobValidationError,
    validate,
    validate_or_raise,
)


class TestValidate:
    def test_valid_payload_has_no_errors(self):
        payload = {"agent_id": "a1", "ports": "80,443"}
        assert validate("firewall.open_ports", payload) == []

    def test_missing_fields_listed_in_order(self):
        errors = validate("ts3.install", {"node_id": 1})
        assert errors == [
            "Missing required field: install_dir",
            "Missing required field: service_name",
        ]

    def test_empty_string_counts_as_missing(self):
        errors = validate("instance.stop", {"instance_id": "", "agent_id": "a1"})
        assert errors == ["Missing required field: instance_id"]

    def test_zero_and_false_are_present(self):
        payload = {"virtual_server_id": 0}
        assert validate("ts3.virtual.token.rotate", payload) == []

    def test_unknown_type_accepts_anything(self):
        assert validate("instance.backup.create", {}) == []

    def test_every_registered_type_rejects_empty_payload(self):
        for job_type, fields in REQUIRED_FIELDS.items():
            assert len(validate(job_type, {})) == len(fields), job_type


class TestValidateOrRaise:
    def test_raises_with_errors(self):
        with pytest.raises(JobValidationError) as exc_info:
            validate_or_raise("node.disk.stat", {"agent_id": "a1"})

        assert exc_info.value.job_type == "node.disk.stat"
        assert exc_info.value.errors == ["Missing required field: node_id"]
        assert "node_id" in str(exc_info.value)

    def test_passes_valid_payload(self):
        validate_or_raise("node.disk.stat", {"agent_id": "a1", "node_id": "a1"})
