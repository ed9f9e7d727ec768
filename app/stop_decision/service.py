"""Stop decision service: CONTINUE / HOLD / KILL for automated CI reruns.

Rules are evaluated in a fixed order and the first match wins:

1. Blocked failure class         → HOLD  NON_RETRIABLE     FIX_REQUIRED
2. Job rerun attempts exhausted  → HOLD  MAX_ATTEMPTS      MANUAL_REVIEW
3. PR rerun budget exhausted     → HOLD  MAX_TOTAL_RERUNS  MANUAL_REVIEW
4. Same failure signal repeating → HOLD  NO_SIGNAL_CHANGE  MANUAL_REVIEW
5. Cooldown since last change    → HOLD  COOLDOWN_ACTIVE   WAIT
6. Waited too long for green     → KILL  TIMEOUT           MANUAL_REVIEW
7. Otherwise                     → CONTINUE                PROMPT

Thresholds come from the lawbook stop_rules, or conservative defaults when no lawbook
is configured. Every decision is audited; a failed audit write never blocks the decision.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.governance.environment import try_normalize_environment
from app.governance.lawbook import StopRules
from app.governance.snapshot import GovernanceSnapshot, load_governance
from app.models.stop_decision_audit import StopDecisionAudit
from app.stop_decision.schemas import (
    StopDecision,
    StopDecisionContext,
    StopDecisionEvidence,
    StopDecisionMetadata,
    StopDecisionTarget,
    StopDecisionThresholds,
)

logger = logging.getLogger(__name__)


def _minutes_since(moment: datetime | None, now: datetime) -> int | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int((now - moment).total_seconds() // 60)


def is_blocked_failure_class(failure_class: str | None, blocked: list[str]) -> bool:
    """True if failure_class contains any blocked class (case-insensitive)."""
    if not failure_class:
        return False
    normalized = failure_class.strip().lower()
    return any(b.lower() in normalized for b in blocked)


def has_no_signal_change(signals: list[str], threshold: int) -> bool:
    """True if the last `threshold` signals are all identical. Needs at least `threshold`."""
    if len(signals) < threshold:
        return False
    recent = signals[-threshold:]
    return all(s == recent[0] for s in recent)


def _decide(
    context: StopDecisionContext,
    rules: StopRules,
    now: datetime,
) -> tuple[str, str | None, str, str, str]:
    """Return (decision, reason_code, next_step, reason, applied_rule) for the first matching rule."""
    counts = context.attempt_counts
    if is_blocked_failure_class(context.failure_class, rules.block_on_failure_classes):
        return (
            "HOLD",
            "NON_RETRIABLE",
            "FIX_REQUIRED",
            f"Failure class '{context.failure_class}' is non-retriable per lawbook",
            "blockOnFailureClasses",
        )
    if counts.current_job_attempts >= rules.max_reruns_per_job:
        return (
            "HOLD",
            "MAX_ATTEMPTS",
            "MANUAL_REVIEW",
            "Job has reached maximum rerun attempts "
            f"({counts.current_job_attempts}/{rules.max_reruns_per_job})",
            "maxRerunsPerJob",
        )
    if counts.total_pr_attempts >= rules.max_total_reruns_per_pr:
        return (
            "HOLD",
            "MAX_TOTAL_RERUNS",
            "MANUAL_REVIEW",
            "PR has reached maximum total reruns "
            f"({counts.total_pr_attempts}/{rules.max_total_reruns_per_pr})",
            "maxTotalRerunsPerPr",
        )
    if has_no_signal_change(context.previous_failure_signals, rules.no_signal_change_threshold):
        return (
            "HOLD",
            "NO_SIGNAL_CHANGE",
            "MANUAL_REVIEW",
            f"No signal change detected over {rules.no_signal_change_threshold} cycles "
            "- same failure repeating",
            "noSignalChangeThreshold",
        )
    since_change = _minutes_since(context.last_changed_at, now)
    if since_change is not None and since_change < rules.cooldown_minutes:
        return (
            "HOLD",
            "COOLDOWN_ACTIVE",
            "WAIT",
            f"Cooldown period active: {since_change}/{rules.cooldown_minutes} minutes elapsed",
            "cooldownMinutes",
        )
    if rules.max_wait_minutes_for_green:
        since_failure = _minutes_since(context.first_failure_at, now)
        if since_failure is not None and since_failure >= rules.max_wait_minutes_for_green:
            return (
                "KILL",
                "TIMEOUT",
                "MANUAL_REVIEW",
                "Maximum wait time exceeded: "
                f"{since_failure}/{rules.max_wait_minutes_for_green} minutes",
                "maxWaitMinutesForGreen",
            )
    return (
        "CONTINUE",
        None,
        "PROMPT",
        "All stop condition checks passed - safe to continue automation",
        "all_checks_passed",
    )


def _deployment_env() -> str:
    return try_normalize_environment(get_settings().deploy_env) or "staging"


def evaluate_stop_decision(
    db: Session,
    context: StopDecisionContext | dict[str, Any],
    governance: GovernanceSnapshot | None = None,
    now: datetime | None = None,
) -> StopDecision:
    """Evaluate whether CI automation may rerun, and audit the decision.

    Args:
        db: Session used for the audit row (committed).
        context: Decision context (model or dict with snake_case/camelCase keys).
        governance: Snapshot providing stop_rules; loaded non-critically when None.
        now: Evaluation time (defaults to current UTC time).

    Returns:
        StopDecision with decision, reason code, reasons and the thresholds applied.
    """
    if not isinstance(context, StopDecisionContext):
        context = StopDecisionContext.model_validate(context)
    now = now or datetime.now(UTC)
    governance = governance or load_governance(required=False)
    rules = governance.stop_rules
    request_id = context.request_id or f"stop-{int(now.timestamp() * 1000)}"

    logger.info(
        "Evaluating stop decision: owner=%s repo=%s pr=%s request_id=%s",
        context.owner,
        context.repo,
        context.pr_number,
        request_id,
    )
    decision, reason_code, next_step, reason, applied_rule = _decide(context, rules, now)
    if decision == "KILL":
        logger.warning("Stop decision: KILL (%s) request_id=%s", reason_code, request_id)
    else:
        logger.info("Stop decision: %s (%s) request_id=%s", decision, reason_code, request_id)

    result = StopDecision(
        request_id=request_id,
        lawbook_hash=governance.lawbook_hash,
        deployment_env=_deployment_env(),
        target=StopDecisionTarget(
            owner=context.owner,
            repo=context.repo,
            pr_number=context.pr_number,
            run_id=context.run_id,
        ),
        decision=decision,
        reason_code=reason_code,
        reasons=[reason],
        recommended_next_step=next_step,
        evidence=StopDecisionEvidence(
            attempt_counts=context.attempt_counts,
            thresholds=StopDecisionThresholds(
                max_reruns_per_job=rules.max_reruns_per_job,
                max_total_reruns_per_pr=rules.max_total_reruns_per_pr,
                max_wait_minutes_for_green=rules.max_wait_minutes_for_green,
                cooldown_minutes=rules.cooldown_minutes,
            ),
            applied_rules=[applied_rule],
        ),
        metadata=StopDecisionMetadata(
            evaluated_at=now,
            lawbook_version=governance.lawbook_version,
        ),
    )
    _record_audit(db, context, result, rules)
    return result


def _record_audit(
    db: Session,
    context: StopDecisionContext,
    result: StopDecision,
    rules: StopRules,
) -> None:
    """Write the audit row in a savepoint and commit. Failures are logged, never raised.

    A failed write rolls back only the savepoint; pending caller work is kept and committed.
    """
    try:
        with db.begin_nested():
            db.add(
                StopDecisionAudit(
                    resource_owner=context.owner,
                    resource_repo=context.repo,
                    pr_number=context.pr_number,
                    workflow_run_id=context.run_id,
                    request_id=result.request_id,
                    decision=result.decision,
                    reason_code=result.reason_code,
                    reasons=list(result.reasons),
                    recommended_next_step=result.recommended_next_step,
                    failure_class=context.failure_class,
                    current_job_attempts=context.attempt_counts.current_job_attempts,
                    total_pr_attempts=context.attempt_counts.total_pr_attempts,
                    lawbook_hash=result.lawbook_hash,
                    lawbook_version=result.metadata.lawbook_version,
                    applied_rules=list(result.evidence.applied_rules),
                    evidence=result.audit_evidence(context, rules.model_dump()),
                )
            )
    except SQLAlchemyError:
        logger.warning(
            "Failed to record stop decision audit: request_id=%s",
            result.request_id,
            exc_info=True,
        )
    db.commit()
