"""Tests for idempotency key derivation."""

from control_plane.jobs.fingerprint import (
    advisory_lock_key,
    canonical_json,
    compute_idempotency_key,
)


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json({"b": 1, "a": {"y": 2, "x": 1}}) == canonical_json(
            {"a": {"x": 1, "y": 2}, "b": 1}
        )

    def test_compact_separators(self):
        assert canonical_json({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'


class TestIdempotencyKey:
    def test_deterministic(self):
        payload = {"instance_id": "7", "agent_id": "a1"}
        first = compute_idempotency_key("a1", "instance.stop", payload)
        second = compute_idempotency_key("a1", "instance.stop", dict(reversed(payload.items())))
        assert first == second
        assert len(first) == 64

    def test_differs_by_agent_type_and_payload(self):
        base = compute_idempotency_key("a1", "instance.stop", {"instance_id": "7"})
        assert base != compute_idempotency_key("a2", "instance.stop", {"instance_id": "7"})
        assert base != compute_idempotency_key("a1", "instance.start", {"instance_id": "7"})
        assert base != compute_idempotency_key("a1", "instance.stop", {"instance_id": "8"})

    def test_missing_agent_hashes_as_empty(self):
        assert compute_idempotency_key(None, "x", {}) == compute_idempotency_key("", "x", {})


class TestAdvisoryLockKey:
    def test_fits_signed_bigint(self):
        key = advisory_lock_key("f" * 64)
        assert -(2**63) <= key < 2**63

    def test_stable(self):
        assert advisory_lock_key("abc") == advisory_lock_key("abc")
        assert advisory_lock_key("abc") != advisory_lock_key("abd")
