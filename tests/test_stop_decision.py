"""Tests for the stop decision service (CONTINUE / HOLD / KILL)."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.governance.lawbook import parse_lawbook
from app.governance.snapshot import GovernanceSnapshot
from app.models import Incident, StopDecisionAudit
from app.stop_decision import StopDecisionContext, evaluate_stop_decision
from app.stop_decision.service import has_no_signal_change, is_blocked_failure_class
from tests.factories import NOW, lawbook_data


def _context(**overrides) -> dict:
    data = {
        "owner": "acme",
        "repo": "web",
        "pr_number": 42,
        "run_id": 9001,
        "failure_class": "flaky test",
        "attempt_counts": {"current_job_attempts": 0, "total_pr_attempts": 0},
    }
    data.update(overrides)
    return data


def _counts(job: int, pr: int) -> dict:
    return {"current_job_attempts": job, "total_pr_attempts": pr}


def _decide(db: Session, governance=None, **overrides):
    return evaluate_stop_decision(db, _context(**overrides), governance, now=NOW)


def test_continue_when_all_checks_pass(db: Session, governance) -> None:
    result = _decide(db, governance)

    assert result.decision == "CONTINUE"
    assert result.reason_code is None
    assert result.recommended_next_step == "PROMPT"
    assert result.evidence.applied_rules == ["all_checks_passed"]
    assert result.schema_version == "1.0"
    assert result.target.pr_number == 42
    assert result.metadata.lawbook_version == "test-1"
    assert result.lawbook_hash == governance.lawbook_hash


def test_blocked_failure_class_wins_over_exhausted_budgets(db: Session, governance) -> None:
    result = _decide(
        db,
        governance,
        failure_class="Lint Error in src/app.py",
        attempt_counts=_counts(9, 9),
    )

    assert (result.decision, result.reason_code) == ("HOLD", "NON_RETRIABLE")
    assert result.recommended_next_step == "FIX_REQUIRED"
    assert result.evidence.applied_rules == ["blockOnFailureClasses"]


@pytest.mark.parametrize(
    ("counts", "code", "rule"),
    [
        (_counts(2, 0), "MAX_ATTEMPTS", "maxRerunsPerJob"),
        (_counts(2, 5), "MAX_ATTEMPTS", "maxRerunsPerJob"),
        (_counts(1, 5), "MAX_TOTAL_RERUNS", "maxTotalRerunsPerPr"),
    ],
)
def test_attempt_budgets(db: Session, governance, counts, code, rule) -> None:
    result = _decide(db, governance, attempt_counts=counts)

    assert (result.decision, result.reason_code) == ("HOLD", code)
    assert result.recommended_next_step == "MANUAL_REVIEW"
    assert result.evidence.applied_rules == [rule]


def test_repeating_failure_signal_holds(db: Session, governance) -> None:
    result = _decide(db, governance, previous_failure_signals=["sig-a", "sig-b", "sig-b"])

    assert (result.decision, result.reason_code) == ("HOLD", "NO_SIGNAL_CHANGE")
    assert "2 cycles" in result.reasons[0]


def test_changing_failure_signal_continues(db: Session, governance) -> None:
    result = _decide(db, governance, previous_failure_signals=["sig-a", "sig-b"])
    assert result.decision == "CONTINUE"


def test_cooldown_holds_with_wait(db: Session, governance) -> None:
    result = _decide(db, governance, last_changed_at=NOW - timedelta(minutes=3))

    assert (result.decision, result.reason_code) == ("HOLD", "COOLDOWN_ACTIVE")
    assert result.recommended_next_step == "WAIT"
    assert "3/5 minutes" in result.reasons[0]


def test_cooldown_elapsed_continues(db: Session, governance) -> None:
    result = _decide(db, governance, last_changed_at=NOW - timedelta(minutes=5))
    assert result.decision == "CONTINUE"


def test_waiting_too_long_for_green_kills(db: Session, governance) -> None:
    result = _decide(db, governance, first_failure_at=NOW - timedelta(minutes=60))

    assert (result.decision, result.reason_code) == ("KILL", "TIMEOUT")
    assert result.recommended_next_step == "MANUAL_REVIEW"
    assert result.evidence.applied_rules == ["maxWaitMinutesForGreen"]


def test_cooldown_is_checked_before_timeout(db: Session, governance) -> None:
    result = _decide(
        db,
        governance,
        first_failure_at=NOW - timedelta(hours=3),
        last_changed_at=NOW - timedelta(minutes=1),
    )
    assert result.reason_code == "COOLDOWN_ACTIVE"


def test_just_under_max_wait_continues(db: Session, governance) -> None:
    result = _decide(db, governance, first_failure_at=NOW - timedelta(minutes=59))
    assert result.decision == "CONTINUE"


def test_lawbook_stop_rules_override_defaults(db: Session) -> None:
    governance = GovernanceSnapshot(
        lawbook=parse_lawbook(
            lawbook_data(
                stop_rules={
                    "max_reruns_per_job": 1,
                    "max_total_reruns_per_pr": 3,
                    "max_wait_minutes_for_green": 0,
                    "cooldown_minutes": 0,
                    "block_on_failure_classes": ["infra outage"],
                }
            )
        )
    )

    result = _decide(
        db,
        governance,
        failure_class="lint error",
        attempt_counts=_counts(1, 0),
        first_failure_at=NOW - timedelta(days=1),
    )

    assert result.reason_code == "MAX_ATTEMPTS"
    thresholds = result.evidence.thresholds
    assert (thresholds.max_reruns_per_job, thresholds.max_total_reruns_per_pr) == (1, 3)

    # max_wait_minutes_for_green 0 disables the timeout rule
    relaxed = _decide(db, governance, first_failure_at=NOW - timedelta(days=1))
    assert relaxed.decision == "CONTINUE"


def test_defaults_apply_without_lawbook(db: Session) -> None:
    result = _decide(db, attempt_counts=_counts(2, 0))

    assert result.reason_code == "MAX_ATTEMPTS"
    assert result.lawbook_hash is None
    assert result.metadata.lawbook_version is None
    thresholds = result.evidence.thresholds
    assert thresholds.model_dump() == {
        "max_reruns_per_job": 2,
        "max_total_reruns_per_pr": 5,
        "max_wait_minutes_for_green": 60,
        "cooldown_minutes": 5,
    }


def test_default_blocked_classes_without_lawbook(db: Session) -> None:
    result = _decide(db, failure_class="Syntax Error: unexpected EOF")
    assert result.reason_code == "NON_RETRIABLE"


def test_accepts_camel_case_context(db: Session, governance) -> None:
    payload = {
        "owner": "acme",
        "repo": "web",
        "prNumber": 7,
        "runId": 12,
        "failureClass": "flaky test",
        "attemptCounts": {"currentJobAttempts": 0, "totalPrAttempts": 5},
        "previousFailureSignals": [],
        "requestId": "req-123",
    }

    result = evaluate_stop_decision(db, payload, governance, now=NOW)

    assert result.request_id == "req-123"
    assert result.target.run_id == 12
    assert result.reason_code == "MAX_TOTAL_RERUNS"


def test_request_id_defaults_to_timestamp(db: Session, governance) -> None:
    result = _decide(db, governance)
    assert result.request_id == f"stop-{int(NOW.timestamp() * 1000)}"


def test_invalid_context_raises(db: Session, governance) -> None:
    with pytest.raises(ValidationError):
        evaluate_stop_decision(db, _context(pr_number=0), governance, now=NOW)


@pytest.mark.parametrize(("raw", "expected"), [("prod", "production"), ("qa", "staging"), ("", "staging")])
def test_deployment_env_is_canonical(
    db: Session, governance, monkeypatch: pytest.MonkeyPatch, raw: str, expected: str
) -> None:
    monkeypatch.setenv("DEPLOY_ENV", raw)
    assert _decide(db, governance).deployment_env == expected


def test_decision_is_audited(db: Session, governance) -> None:
    result = _decide(
        db,
        governance,
        attempt_counts=_counts(2, 3),
        previous_failure_signals=["a"],
        request_id="req-audit",
    )

    row = db.scalars(select(StopDecisionAudit)).one()
    assert row.request_id == "req-audit"
    assert (row.resource_owner, row.resource_repo, row.pr_number) == ("acme", "web", 42)
    assert row.workflow_run_id == 9001
    assert row.decision == result.decision == "HOLD"
    assert row.reason_code == "MAX_ATTEMPTS"
    assert row.applied_rules == ["maxRerunsPerJob"]
    assert (row.current_job_attempts, row.total_pr_attempts) == (2, 3)
    assert row.lawbook_version == "test-1"
    assert row.evidence["context"]["previous_signals_count"] == 1
    assert row.evidence["thresholds"]["max_reruns_per_job"] == 2


def test_audit_failure_still_returns_decision(db: Session, governance) -> None:
    with patch(
        "app.stop_decision.service.StopDecisionAudit",
        side_effect=SQLAlchemyError("audit table missing"),
    ):
        result = _decide(db, governance)

    assert result.decision == "CONTINUE"
    assert db.scalars(select(StopDecisionAudit)).all() == []


def test_audit_failure_keeps_pending_caller_changes(db: Session, governance, make_incident) -> None:
    incident = make_incident()
    incident.title = "Edited before the stop decision"

    with patch(
        "app.stop_decision.service.StopDecisionAudit",
        side_effect=SQLAlchemyError("audit table missing"),
    ):
        _decide(db, governance)

    db.expire_all()
    assert db.get(Incident, incident.id).title == "Edited before the stop decision"


def test_context_model_is_accepted_directly(db: Session, governance) -> None:
    context = StopDecisionContext.model_validate(_context())
    assert evaluate_stop_decision(db, context, governance, now=NOW).decision == "CONTINUE"


def test_is_blocked_failure_class() -> None:
    blocked = ["build deterministic", "lint error"]
    assert is_blocked_failure_class("  LINT ERROR (eslint)", blocked)
    assert not is_blocked_failure_class("flaky test", blocked)
    assert not is_blocked_failure_class(None, blocked)


def test_has_no_signal_change() -> None:
    assert has_no_signal_change(["x", "x"], 2)
    assert not has_no_signal_change(["x"], 2)
    assert not has_no_signal_change(["x", "y"], 2)
    assert has_no_signal_change(["y", "x", "x", "x"], 3)
