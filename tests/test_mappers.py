"""Tests for signal → incident draft mappers and signal validation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.incidents.mappers import (
    DEPLOY_STATUS_RED,
    DEPLOY_STATUS_YELLOW,
    ECS_TASK_FAILED,
    ECS_TASK_STOPPED,
    RUNNER_STEP_FAILED,
    RUNNER_STEP_TIMEOUT,
    SIGNAL_MAPPERS,
    VERIFICATION_FAILED,
    VERIFICATION_TIMEOUT,
    SignalMapper,
    get_signal_mapper,
    map_deploy_status,
    map_ecs_stopped,
    map_runner,
    map_verification,
    register_signal_mapper,
    validate_deploy_status_signal,
    validate_ecs_stopped_signal,
    validate_runner_signal,
    validate_verification_signal,
)
from app.schemas.incident import EvidenceDraft, IncidentDraft
from app.schemas.signals import (
    DeployStatusSignal,
    EcsStoppedSignal,
    RunnerSignal,
    VerificationSignal,
)
from tests.factories import (
    deploy_status_signal,
    ecs_stopped_signal,
    runner_signal,
    verification_signal,
)

# ---------------------------------------------------------------------------
# deploy_status
# ---------------------------------------------------------------------------


def test_deploy_status_green_is_not_an_incident() -> None:
    """GREEN deploy status maps to None."""
    signal = DeployStatusSignal.model_validate(deploy_status_signal(status="GREEN"))
    assert map_deploy_status(signal) is None


def test_deploy_status_red_builds_deterministic_key_and_fields() -> None:
    """RED status → RED incident keyed by env, deploy id and changed_at."""
    draft = map_deploy_status(DeployStatusSignal.model_validate(deploy_status_signal()))

    assert draft is not None
    assert draft.incident_key == "deploy_status:prod:deploy-123:2024-01-01T00:00:00Z"
    assert draft.severity == "RED"
    assert draft.title == "Deploy status RED in prod"
    assert draft.summary == "[RED] HEALTH_CHECK_FAILED: Health check failing"
    assert draft.classification["error_code"] == DEPLOY_STATUS_RED
    assert draft.tags == ["deploy_status", "prod", "status:red", "deploy:deploy-123"]
    assert draft.first_seen_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert draft.source_primary.kind == "deploy_status"
    assert draft.source_primary.ref["env"] == "prod"
    assert draft.evidence[0].ref["signals"] == {"health": "failing", "errorRate": 0.31}


def test_deploy_status_yellow_without_deploy_id_uses_unknown() -> None:
    """Missing deploy id → "unknown" in the key and no deploy tag."""
    payload = deploy_status_signal(status="YELLOW")
    del payload["deployId"]
    draft = map_deploy_status(DeployStatusSignal.model_validate(payload))

    assert draft is not None
    assert draft.incident_key == "deploy_status:prod:unknown:2024-01-01T00:00:00Z"
    assert draft.severity == "YELLOW"
    assert draft.classification["error_code"] == DEPLOY_STATUS_YELLOW
    assert not any(t.startswith("deploy:") for t in draft.tags)


def test_deploy_status_mapping_is_deterministic() -> None:
    """Same signal mapped twice yields identical drafts."""
    signal = DeployStatusSignal.model_validate(deploy_status_signal())
    assert map_deploy_status(signal) == map_deploy_status(signal)


def test_deploy_status_accepts_snake_case_keys() -> None:
    """Signals may use snake_case field names."""
    signal = DeployStatusSignal.model_validate(
        {
            "env": "staging",
            "status": "RED",
            "changed_at": "2024-01-01T00:00:00Z",
            "deploy_id": "d-1",
            "signals": {},
        }
    )
    draft = map_deploy_status(signal)
    assert draft is not None
    assert draft.incident_key == "deploy_status:staging:d-1:2024-01-01T00:00:00Z"


# ---------------------------------------------------------------------------
# verification
# ---------------------------------------------------------------------------


def test_verification_success_is_not_an_incident() -> None:
    signal = VerificationSignal.model_validate(verification_signal(status="success"))
    assert map_verification(signal) is None


def test_verification_failed_is_red_and_keyed_by_report_hash() -> None:
    """failed verification → RED incident; key uses report hash when present."""
    draft = map_verification(VerificationSignal.model_validate(verification_signal()))

    assert draft is not None
    assert draft.incident_key == "verification:deploy-456:c0ffee"
    assert draft.severity == "RED"
    assert draft.classification["error_code"] == VERIFICATION_FAILED
    assert "- Health endpoint (health): HTTP 503" in draft.summary
    assert "playbook:post-deploy-smoke" in draft.tags
    assert draft.evidence[0].ref["report_hash"] == "c0ffee"


def test_verification_timeout_falls_back_to_run_id() -> None:
    """No report hash → run id in the key; timeout gets its own error code."""
    payload = verification_signal(status="timeout")
    del payload["reportHash"]
    draft = map_verification(VerificationSignal.model_validate(payload))

    assert draft is not None
    assert draft.incident_key == "verification:deploy-456:verify-77"
    assert draft.classification["error_code"] == VERIFICATION_TIMEOUT


# ---------------------------------------------------------------------------
# ecs_stopped
# ---------------------------------------------------------------------------


def test_ecs_nonzero_exit_is_red() -> None:
    draft = map_ecs_stopped(EcsStoppedSignal.model_validate(ecs_stopped_signal()))

    assert draft is not None
    assert draft.severity == "RED"
    assert draft.classification["error_code"] == ECS_TASK_FAILED
    assert draft.title == "ECS task stopped in prod-cluster: 0a1b2c3d"
    assert "task_def:web" in draft.tags
    assert "- web (exit: 137): OOMKilled" in draft.summary
    assert draft.source_primary.kind == "ecs_event"
    assert draft.evidence[0].kind == "ecs"


def test_ecs_clean_stop_is_yellow() -> None:
    """Exit code 0 and a benign reason → YELLOW ECS_TASK_STOPPED."""
    draft = map_ecs_stopped(
        EcsStoppedSignal.model_validate(
            ecs_stopped_signal(exitCode=0, stoppedReason="Scaling activity initiated", containers=None)
        )
    )
    assert draft is not None
    assert draft.severity == "YELLOW"
    assert draft.classification["error_code"] == ECS_TASK_STOPPED


def test_ecs_error_reason_without_exit_code_is_red() -> None:
    draft = map_ecs_stopped(
        EcsStoppedSignal.model_validate(
            ecs_stopped_signal(exitCode=None, stoppedReason="Task failed ELB health checks")
        )
    )
    assert draft is not None
    assert draft.severity == "RED"


# ---------------------------------------------------------------------------
# runner
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("conclusion", ["success", "skipped", "neutral"])
def test_runner_non_failure_conclusions_are_not_incidents(conclusion: str) -> None:
    signal = RunnerSignal.model_validate(runner_signal(conclusion=conclusion))
    assert map_runner(signal) is None


def test_runner_failure_is_red() -> None:
    draft = map_runner(RunnerSignal.model_validate(runner_signal()))

    assert draft is not None
    assert draft.incident_key == "runner:5501:Run tests:failure"
    assert draft.severity == "RED"
    assert draft.title == "Workflow CI failure: Run tests"
    assert draft.classification["error_code"] == RUNNER_STEP_FAILED
    assert "repo:acme/web" in draft.tags
    assert "Error:\n3 tests failed" in draft.summary


def test_runner_cancelled_is_yellow_and_timeout_has_own_code() -> None:
    cancelled = map_runner(RunnerSignal.model_validate(runner_signal(conclusion="cancelled")))
    timeout = map_runner(RunnerSignal.model_validate(runner_signal(conclusion="timeout")))

    assert cancelled is not None and cancelled.severity == "YELLOW"
    assert timeout is not None and timeout.severity == "RED"
    assert timeout.classification["error_code"] == RUNNER_STEP_TIMEOUT


def test_runner_title_without_workflow_name() -> None:
    payload = runner_signal()
    del payload["workflowName"]
    draft = map_runner(RunnerSignal.model_validate(payload))
    assert draft is not None
    assert draft.title == "GitHub Actions failure: Run tests"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_validate_accepts_well_formed_signals() -> None:
    assert validate_deploy_status_signal(deploy_status_signal()).valid
    assert validate_verification_signal(verification_signal()).valid
    assert validate_ecs_stopped_signal(ecs_stopped_signal()).valid
    assert validate_runner_signal(runner_signal()).valid


def test_validate_reports_missing_field() -> None:
    payload = deploy_status_signal()
    del payload["env"]
    result = validate_deploy_status_signal(payload)

    assert result.valid is False
    assert result.error is not None
    assert "env" in result.error


def test_validate_rejects_unknown_status_and_bad_timestamp() -> None:
    assert validate_deploy_status_signal(deploy_status_signal(status="BLUE")).valid is False
    result = validate_runner_signal(runner_signal(completedAt="yesterday"))
    assert result.valid is False
    assert "ISO 8601" in (result.error or "")


def test_validate_rejects_non_object() -> None:
    result = validate_ecs_stopped_signal(["not", "a", "signal"])
    assert result.valid is False
    assert result.error == "Signal must be an object"


@pytest.mark.parametrize(
    ("signal_type", "payload"),
    [
        ("runner", runner_signal(stepName="s" * 600)),
        ("runner", runner_signal(workflowName="w" * 129)),
        ("ecs_stopped", ecs_stopped_signal(taskArn="arn:" + "t" * 300)),
        ("deploy_status", deploy_status_signal(env="e" * 65)),
        ("verification", verification_signal(reportHash="h" * 129)),
    ],
)
def test_validate_rejects_oversize_fields(signal_type: str, payload: dict) -> None:
    result = get_signal_mapper(signal_type).validate(payload)
    assert result.valid is False
    assert "at most" in (result.error or "")


def test_largest_valid_signals_map_within_column_limits() -> None:
    """Any payload that validates maps to a draft whose key and title fit their columns."""
    payloads = {
        "runner": runner_signal(runId="r" * 128, stepName="s" * 128, workflowName="w" * 128),
        "ecs_stopped": ecs_stopped_signal(cluster="c" * 128, taskArn="arn:" + "t" * 252),
        "deploy_status": deploy_status_signal(env="e" * 64, deployId="d" * 128),
        "verification": verification_signal(deployId="d" * 128, reportHash="h" * 128),
    }

    for signal_type, payload in payloads.items():
        mapper = get_signal_mapper(signal_type)
        assert mapper.validate(payload).valid
        draft = mapper.map(payload)
        assert draft is not None
        assert len(draft.incident_key) <= 512
        assert len(draft.title) <= 512


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_get_signal_mapper_unknown_type_raises() -> None:
    with pytest.raises(ValueError, match="Unknown signal_type"):
        get_signal_mapper("pagerduty")


def test_registered_mapper_parses_and_maps_raw_payload() -> None:
    mapper = get_signal_mapper("runner")
    draft = mapper.map(runner_signal())
    assert draft is not None
    assert draft.incident_key.startswith("runner:5501:")


def test_register_signal_mapper_adds_new_kind(monkeypatch: pytest.MonkeyPatch) -> None:
    """New signal kinds plug into the registry without touching existing mappers."""
    monkeypatch.setattr("app.incidents.mappers.SIGNAL_MAPPERS", dict(SIGNAL_MAPPERS))

    def map_custom(signal: RunnerSignal) -> IncidentDraft:
        seen = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return IncidentDraft(
            incident_key=f"custom:{signal.run_id}",
            severity="YELLOW",
            title="custom",
            summary="",
            classification={},
            source_primary=EvidenceDraft(kind="custom", ref={"run_id": signal.run_id}),
            first_seen_at=seen,
            last_seen_at=seen,
        )

    register_signal_mapper(SignalMapper("custom", RunnerSignal, map_custom))

    draft = get_signal_mapper("custom").map(runner_signal())
    assert draft is not None
    assert draft.incident_key == "custom:5501"
