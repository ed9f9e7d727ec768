"""Tests for lawbook parsing, hashing, loading and the active-lawbook cache."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from app.governance.lawbook import (
    LawbookValidationError,
    StopRules,
    get_active_lawbook,
    get_lawbook_cache,
    invalidate_lawbook_cache,
    load_lawbook,
    parse_lawbook,
)
from app.governance.snapshot import (
    GovernanceSnapshot,
    LawbookNotConfiguredError,
    load_governance,
)
from tests.factories import lawbook_data

EXAMPLE_LAWBOOK = Path(__file__).resolve().parents[1] / "lawbook" / "example.yaml"


# ---------------------------------------------------------------------------
# Parsing and hashing
# ---------------------------------------------------------------------------


def test_parse_lawbook_uses_explicit_version() -> None:
    lawbook = parse_lawbook(lawbook_data())
    assert lawbook.version == "test-1"
    assert len(lawbook.hash) == 64


def test_version_falls_back_to_hash() -> None:
    data = lawbook_data()
    del data["version"]
    lawbook = parse_lawbook(data)
    assert lawbook.version == lawbook.hash


def test_hash_is_independent_of_key_order() -> None:
    data = lawbook_data()
    reordered = dict(reversed(list(data.items())))
    assert parse_lawbook(data).hash == parse_lawbook(reordered).hash


def test_env_keys_are_canonicalized() -> None:
    """"prod" keys in allowlists and ALB mapping are stored as "production"."""
    document = parse_lawbook(lawbook_data()).document
    assert set(document.allowlists.ecs) == {"production", "staging"}
    assert set(document.alb_to_ecs_mapping) == {"production"}


def test_missing_sections_take_conservative_defaults() -> None:
    document = parse_lawbook({"version": "bare"}).document
    assert document.remediation.enabled is False
    assert document.allowlists.repositories == []
    assert document.stop_rules == StopRules()


@pytest.mark.parametrize(
    "data",
    [
        {"unknown_section": {}},
        {"stop_rules": {"max_reruns_per_job": -1}},
        {"allowlists": {"ecs": {"sandbox": {"clusters": [], "services": []}}}},
        {"alb_to_ecs_mapping": {"prod": {"tg": {"cluster": "c"}}}},
    ],
)
def test_invalid_lawbook_raises(data: dict) -> None:
    with pytest.raises(LawbookValidationError):
        parse_lawbook(data)


def test_non_mapping_lawbook_raises() -> None:
    with pytest.raises(LawbookValidationError, match="mapping"):
        parse_lawbook(["not", "a", "mapping"])  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_load_example_lawbook() -> None:
    lawbook = load_lawbook(EXAMPLE_LAWBOOK)
    assert lawbook.version == "2026.10.1"
    assert lawbook.document.remediation.enabled is True
    assert lawbook.document.evidence.required_kinds_by_category["ECS_TASK_CRASHLOOP"] == ["ecs_stopped"]
    assert lawbook.source == str(EXAMPLE_LAWBOOK)


def test_load_lawbook_hash_ignores_formatting(tmp_path: Path) -> None:
    """Reformatted YAML with the same content keeps the same hash."""
    data = lawbook_data()
    compact = tmp_path / "compact.yaml"
    compact.write_text(yaml.safe_dump(data, default_flow_style=True))
    block = tmp_path / "block.yaml"
    block.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))

    assert load_lawbook(compact).hash == load_lawbook(block).hash


def test_load_malformed_yaml_raises(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("remediation: [unclosed")
    with pytest.raises(LawbookValidationError, match="malformed"):
        load_lawbook(path)


def test_load_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_lawbook(tmp_path / "absent.yaml")


# ---------------------------------------------------------------------------
# Active lawbook cache
# ---------------------------------------------------------------------------


def test_no_lawbook_path_means_not_configured() -> None:
    assert get_active_lawbook() is None
    assert get_lawbook_cache().entry is None


def test_active_lawbook_is_loaded_once_and_cached(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "lawbook.yaml"
    path.write_text(yaml.safe_dump(lawbook_data()))
    monkeypatch.setenv("LAWBOOK_PATH", str(path))

    first = get_active_lawbook()
    path.write_text(yaml.safe_dump(lawbook_data(version="test-2")))
    second = get_active_lawbook()

    assert first is not None
    assert second is first
    assert get_lawbook_cache().entry.loaded_at is not None

    invalidate_lawbook_cache()
    reloaded = get_active_lawbook()
    assert reloaded is not None
    assert reloaded.version == "test-2"


def test_invalid_lawbook_file_is_not_cached(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "lawbook.yaml"
    path.write_text(yaml.safe_dump({"remediation": {"enabled": "sometimes"}}))
    monkeypatch.setenv("LAWBOOK_PATH", str(path))

    assert get_active_lawbook() is None
    assert get_lawbook_cache().entry is None

    path.write_text(yaml.safe_dump(lawbook_data()))
    assert get_active_lawbook() is not None


# ---------------------------------------------------------------------------
# Governance snapshot
# ---------------------------------------------------------------------------


def test_load_governance_required_raises_without_lawbook() -> None:
    with pytest.raises(LawbookNotConfiguredError) as exc_info:
        load_governance(required=True)
    assert exc_info.value.code == "LAWBOOK_NOT_CONFIGURED"


def test_load_governance_optional_falls_back_to_defaults() -> None:
    snapshot = load_governance(required=False)
    assert snapshot.is_configured is False
    assert snapshot.lawbook_version is None
    assert snapshot.remediation.enabled is False
    assert snapshot.stop_rules == StopRules()


def test_load_governance_uses_active_lawbook(active_lawbook) -> None:
    snapshot = load_governance(required=True)
    assert snapshot.lawbook_version == "test-1"
    assert snapshot.lawbook_hash == active_lawbook.hash


def test_snapshot_allowlists(governance: GovernanceSnapshot) -> None:
    assert governance.is_repo_allowed("ACME", "Web") is True
    assert governance.is_repo_allowed("acme", "api") is False
    assert governance.is_repo_allowed("", "web") is False
    assert governance.is_ecs_target_allowed("production", "prod-cluster", "web") is True
    assert governance.is_ecs_target_allowed("prod", "staging-cluster", "web") is False
    assert governance.is_ecs_target_allowed("sandbox", "prod-cluster", "web") is False


def test_snapshot_resolves_alb_mapping_per_env(governance: GovernanceSnapshot) -> None:
    target = governance.resolve_alb_target("prod", "arn:aws:elasticloadbalancing:tg/web-prod")
    assert target is not None
    assert (target.cluster, target.service) == ("prod-cluster", "web")
    assert governance.resolve_alb_target("staging", "arn:aws:elasticloadbalancing:tg/web-prod") is None


def test_unconfigured_snapshot_denies_everything() -> None:
    snapshot = GovernanceSnapshot()
    assert snapshot.is_repo_allowed("acme", "web") is False
    assert snapshot.is_ecs_target_allowed("prod", "prod-cluster", "web") is False
    assert snapshot.resolve_alb_target("prod", "tg") is None
