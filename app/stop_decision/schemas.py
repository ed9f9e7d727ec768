"""Stop decision DTOs: evaluation context and the versioned decision result."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StopDecisionType = Literal["CONTINUE", "HOLD", "KILL"]
StopReasonCode = Literal[
    "NON_RETRIABLE",
    "MAX_ATTEMPTS",
    "MAX_TOTAL_RERUNS",
    "NO_SIGNAL_CHANGE",
    "COOLDOWN_ACTIVE",
    "TIMEOUT",
]
RecommendedNextStep = Literal["PROMPT", "FIX_REQUIRED", "MANUAL_REVIEW", "WAIT"]

STOP_DECISION_SCHEMA_VERSION = "1.0"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AttemptCounts(_CamelModel):
    current_job_attempts: int = Field(..., ge=0)
    total_pr_attempts: int = Field(..., ge=0)


class StopDecisionContext(_CamelModel):
    """Inputs for one stop decision. Accepts snake_case or camelCase keys."""

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    pr_number: int = Field(..., ge=1)
    run_id: int | None = None
    failure_class: str | None = None
    attempt_counts: AttemptCounts
    last_changed_at: datetime | None = None
    first_failure_at: datetime | None = None
    previous_failure_signals: list[str] = Field(default_factory=list)
    request_id: str | None = None


class StopDecisionTarget(BaseModel):
    owner: str
    repo: str
    pr_number: int
    run_id: int | None = None


class StopDecisionThresholds(BaseModel):
    max_reruns_per_job: int
    max_total_reruns_per_pr: int
    max_wait_minutes_for_green: int
    cooldown_minutes: int


class StopDecisionEvidence(BaseModel):
    attempt_counts: AttemptCounts
    thresholds: StopDecisionThresholds
    applied_rules: list[str]


class StopDecisionMetadata(BaseModel):
    evaluated_at: datetime
    lawbook_version: str | None = None


class StopDecision(BaseModel):
    """Versioned stop decision result."""

    schema_version: str = STOP_DECISION_SCHEMA_VERSION
    request_id: str
    lawbook_hash: str | None = None
    deployment_env: str
    target: StopDecisionTarget
    decision: StopDecisionType
    reason_code: StopReasonCode | None = None
    reasons: list[str]
    recommended_next_step: RecommendedNextStep
    evidence: StopDecisionEvidence
    metadata: StopDecisionMetadata

    def audit_evidence(self, context: StopDecisionContext, rules: dict[str, Any]) -> dict[str, Any]:
        """Evidence blob stored on the audit row."""
        return {
            "thresholds": rules,
            "context": {
                "first_failure_at": (
                    context.first_failure_at.isoformat() if context.first_failure_at else None
                ),
                "last_changed_at": (
                    context.last_changed_at.isoformat() if context.last_changed_at else None
                ),
                "previous_signals_count": len(context.previous_failure_signals),
            },
        }
