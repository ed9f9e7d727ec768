"""Tests for canonical JSON and content hashing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.canonical import canonical_json, content_hash, sha256_hex
from app.remediation.contracts import compute_inputs_hash, compute_run_key


def test_canonical_json_sorts_keys_and_is_compact() -> None:
    assert canonical_json({"b": 1, "a": [2, 1]}) == '{"a":[2,1],"b":1}'


def test_canonical_json_serializes_datetimes() -> None:
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert canonical_json({"at": moment}) == '{"at":"2024-01-01T00:00:00+00:00"}'


def test_canonical_json_rejects_cycles() -> None:
    value: dict = {}
    value["self"] = value
    with pytest.raises(ValueError, match="cyclic"):
        canonical_json(value)


def test_content_hash_ignores_key_order() -> None:
    assert content_hash({"x": 1, "y": {"b": 2, "a": 1}}) == content_hash(
        {"y": {"a": 1, "b": 2}, "x": 1}
    )
    assert content_hash([1, 2]) != content_hash([2, 1])


def test_sha256_hex_known_value() -> None:
    assert sha256_hex("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_run_key_depends_on_incident_playbook_and_inputs() -> None:
    inputs_hash = compute_inputs_hash({"env": "prod"})
    key = compute_run_key("incident-1", "redeploy-lkg", inputs_hash)

    assert key == compute_run_key("incident-1", "redeploy-lkg", compute_inputs_hash({"env": "prod"}))
    assert key != compute_run_key("incident-2", "redeploy-lkg", inputs_hash)
    assert key != compute_run_key("incident-1", "service-health-reset", inputs_hash)
    assert key != compute_run_key("incident-1", "redeploy-lkg", compute_inputs_hash({}))
