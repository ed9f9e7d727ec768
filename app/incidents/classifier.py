"""Rule-based incident classifier.

Deterministic: the same incident and evidence always produce the same classification.
Rules run in priority order and the first match wins; UNKNOWN is the fallback.
The category drives playbook applicability.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.incidents import store
from app.models.incident import Incident
from app.models.incident_evidence import IncidentEvidence

logger = logging.getLogger(__name__)

CLASSIFIER_VERSION = "0.7.0"

DEPLOY_VERIFICATION_FAILED = "DEPLOY_VERIFICATION_FAILED"
ALB_TARGET_UNHEALTHY = "ALB_TARGET_UNHEALTHY"
ECS_TASK_CRASHLOOP = "ECS_TASK_CRASHLOOP"
ECS_IMAGE_PULL_FAILED = "ECS_IMAGE_PULL_FAILED"
IAM_POLICY_VALIDATION_FAILED = "IAM_POLICY_VALIDATION_FAILED"
RUNNER_WORKFLOW_FAILED = "RUNNER_WORKFLOW_FAILED"
UNKNOWN = "UNKNOWN"

_RUNNER_KINDS = ("runner", "github_run")


@dataclass(frozen=True)
class RuleMatch:
    category: str
    confidence: str
    labels: list[str]
    primary_evidence: dict[str, Any]
    key_facts: list[str]


@dataclass(frozen=True)
class Classification:
    """Classifier output. labels and key_facts are sorted."""

    category: str
    confidence: str
    labels: list[str]
    primary_evidence: dict[str, Any]
    summary: str
    key_facts: list[str]
    pointers: list[dict[str, Any]] = field(default_factory=list)
    classifier_version: str = CLASSIFIER_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "classifier_version": self.classifier_version,
            "category": self.category,
            "confidence": self.confidence,
            "labels": list(self.labels),
            "primary_evidence": self.primary_evidence,
            "evidence_pack": {
                "summary": self.summary,
                "key_facts": list(self.key_facts),
                "pointers": list(self.pointers),
            },
        }


def _pointer(evidence: IncidentEvidence) -> dict[str, Any]:
    pointer: dict[str, Any] = {"kind": evidence.kind, "ref": evidence.ref}
    if evidence.sha256:
        pointer["sha256"] = evidence.sha256
    return pointer


def _of_kind(evidence: Sequence[IncidentEvidence], *kinds: str) -> list[IncidentEvidence]:
    return [e for e in evidence if e.kind in kinds]


def _lower(ref: dict[str, Any], key: str) -> str:
    value = ref.get(key)
    return value.lower() if isinstance(value, str) else ""


def _match_deploy_verification_failed(
    incident: Incident, evidence: Sequence[IncidentEvidence]
) -> RuleMatch | None:
    for ev in _of_kind(evidence, "verification"):
        ref = ev.ref or {}
        if _lower(ref, "status") not in ("failed", "timeout"):
            continue
        facts = [
            f"Verification run {ref.get('run_id') or 'unknown'} failed",
            f"Playbook: {ref.get('playbook_id') or 'unknown'}",
            f"Environment: {ref.get('env') or 'unknown'}",
        ]
        if ref.get("completed_at"):
            facts.append(f"Failed at: {ref['completed_at']}")
        return RuleMatch(
            DEPLOY_VERIFICATION_FAILED,
            "high",
            ["needs-redeploy", "config", "infra"],
            _pointer(ev),
            facts,
        )
    return None


def _match_alb_target_unhealthy(
    incident: Incident, evidence: Sequence[IncidentEvidence]
) -> RuleMatch | None:
    for ev in _of_kind(evidence, "alb"):
        ref = ev.ref or {}
        if "unhealthy" not in (_lower(ref, "target_health"), _lower(ref, "state")):
            continue
        facts = ["ALB target unhealthy", f"Target: {ref.get('target_id') or 'unknown'}"]
        if ref.get("reason"):
            facts.append(f"Reason: {ref['reason']}")
        return RuleMatch(
            ALB_TARGET_UNHEALTHY,
            "high",
            ["infra", "alb", "needs-investigation"],
            _pointer(ev),
            facts,
        )
    return None


def _ecs_facts(headline: str, ref: dict[str, Any]) -> list[str]:
    facts = [
        headline,
        f"Cluster: {ref.get('cluster') or 'unknown'}",
        f"Task: {ref.get('task_arn') or 'unknown'}",
        f"Reason: {ref.get('stopped_reason')}",
    ]
    if ref.get("stopped_at"):
        facts.append(f"Stopped at: {ref['stopped_at']}")
    return facts


def _match_ecs_task_crashloop(
    incident: Incident, evidence: Sequence[IncidentEvidence]
) -> RuleMatch | None:
    for ev in _of_kind(evidence, "ecs"):
        ref = ev.ref or {}
        exit_code = ref.get("exit_code")
        if "essential container in task exited" in _lower(ref, "stopped_reason") and exit_code not in (
            None,
            0,
        ):
            return RuleMatch(
                ECS_TASK_CRASHLOOP,
                "high",
                ["code", "ecs", "crashloop", "needs-investigation"],
                _pointer(ev),
                _ecs_facts(f"ECS task crashed with exit code {exit_code}", ref),
            )
    return None


def _match_ecs_image_pull_failed(
    incident: Incident, evidence: Sequence[IncidentEvidence]
) -> RuleMatch | None:
    for ev in _of_kind(evidence, "ecs"):
        ref = ev.ref or {}
        reason = _lower(ref, "stopped_reason")
        if "cannotpullcontainererror" in reason or "pull image" in reason:
            return RuleMatch(
                ECS_IMAGE_PULL_FAILED,
                "high",
                ["infra", "ecs", "image", "needs-redeploy"],
                _pointer(ev),
                _ecs_facts("ECS task failed to pull container image", ref),
            )
    return None


def _match_iam_policy_validation_failed(
    incident: Incident, evidence: Sequence[IncidentEvidence]
) -> RuleMatch | None:
    for ev in _of_kind(evidence, *_RUNNER_KINDS):
        ref = ev.ref or {}
        message = _lower(ref, "message") or _lower(ref, "error_message")
        if "validate-iam" not in _lower(ref, "step_name") and (
            "iam policy validation failed" not in message
        ):
            continue
        facts = ["IAM policy validation failed", f"Run: {ref.get('run_id') or 'unknown'}"]
        if ref.get("step_name"):
            facts.append(f"Step: {ref['step_name']}")
        if ref.get("completed_at"):
            facts.append(f"Failed at: {ref['completed_at']}")
        return RuleMatch(
            IAM_POLICY_VALIDATION_FAILED,
            "high",
            ["infra", "iam", "policy", "needs-fix"],
            _pointer(ev),
            facts,
        )
    return None


def _match_runner_workflow_failed(
    incident: Incident, evidence: Sequence[IncidentEvidence]
) -> RuleMatch | None:
    for ev in _of_kind(evidence, *_RUNNER_KINDS):
        ref = ev.ref or {}
        if ref.get("conclusion") != "failure":
            continue
        facts = ["GitHub Actions workflow failed", f"Run: {ref.get('run_id') or 'unknown'}"]
        if ref.get("step_name"):
            facts.append(f"Step: {ref['step_name']}")
        if ref.get("run_url"):
            facts.append(f"URL: {ref['run_url']}")
        if ref.get("completed_at"):
            facts.append(f"Failed at: {ref['completed_at']}")
        return RuleMatch(
            RUNNER_WORKFLOW_FAILED,
            "medium",
            ["ci", "runner", "needs-investigation"],
            _pointer(ev),
            facts,
        )
    return None


def _match_unknown(incident: Incident, evidence: Sequence[IncidentEvidence]) -> RuleMatch:
    source = incident.source_primary or {}
    return RuleMatch(
        UNKNOWN,
        "low",
        ["needs-classification"],
        {"kind": source.get("kind"), "ref": source.get("ref")},
        [
            "No specific classification pattern matched",
            f"Severity: {incident.severity}",
            f"Source: {source.get('kind')}",
        ],
    )


RULES: tuple[Callable[[Incident, Sequence[IncidentEvidence]], RuleMatch | None], ...] = (
    _match_deploy_verification_failed,
    _match_alb_target_unhealthy,
    _match_ecs_task_crashloop,
    _match_ecs_image_pull_failed,
    _match_iam_policy_validation_failed,
    _match_runner_workflow_failed,
)


def classify_incident(incident: Incident, evidence: Sequence[IncidentEvidence]) -> Classification:
    """Classify an incident from its evidence. Pure; no I/O."""
    match = next(
        (m for m in (rule(incident, evidence) for rule in RULES) if m is not None),
        None,
    ) or _match_unknown(incident, evidence)
    return Classification(
        category=match.category,
        confidence=match.confidence,
        labels=sorted(match.labels),
        primary_evidence=match.primary_evidence,
        summary=f"{match.category}: {incident.title}",
        key_facts=sorted(match.key_facts),
        pointers=[_pointer(e) for e in evidence],
    )


def classify_and_record(db: Session, incident_id: int) -> Classification | None:
    """Classify a stored incident, merge the result into its classification and emit CLASSIFIED.

    Mapper fields already in classification (error_code, signal_type, ...) are kept.
    Returns None if the incident does not exist. Commits.
    """
    incident = store.get_incident(db, incident_id)
    if incident is None:
        return None
    result = classify_incident(incident, store.list_evidence(db, incident_id))
    incident.classification = {**(incident.classification or {}), **result.to_dict()}
    store.create_event(
        db,
        incident_id,
        "CLASSIFIED",
        {
            "category": result.category,
            "confidence": result.confidence,
            "classifier_version": result.classifier_version,
        },
    )
    db.commit()
    logger.info(
        "Incident classified: id=%s category=%s confidence=%s",
        incident_id,
        result.category,
        result.confidence,
    )
    return result
