"""Lawbook guardrail gates for remediation.

Evaluated before a run is planned. Any DENY reason blocks the playbook; the executor
records the run as SKIPPED with skip_reason LAWBOOK_DENIED.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

from app.governance.snapshot import GovernanceSnapshot

Verdict = Literal["ALLOW", "DENY"]

ROLLBACK_DEPLOY = "ROLLBACK_DEPLOY"
# ROLLBACK_DEPLOY redeploys an earlier artifact; only the LKG playbook may use it.
ROLLBACK_DEPLOY_PLAYBOOKS = ("redeploy-lkg",)

IDEMPOTENCY_KEY_MAX_LENGTH = 256
_IDEMPOTENCY_KEY_RE = re.compile(r"[A-Za-z0-9_:-]+")


@dataclass(frozen=True)
class GateReason:
    code: str
    message: str
    rule_id: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message, "rule_id": self.rule_id}


@dataclass
class GateVerdict:
    """Gate outcome. reasons are sorted by code so verdicts compare deterministically."""

    verdict: Verdict
    lawbook_version: str | None
    reasons: list[GateReason] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.verdict == "ALLOW"

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict,
            "lawbook_version": self.lawbook_version,
            "reasons": [r.to_dict() for r in self.reasons],
        }


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; stored values are UTC.
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def gate_playbook_allowed(
    governance: GovernanceSnapshot,
    playbook_id: str,
    action_types: list[str],
    prior_runs: int = 0,
    last_run_at: datetime | None = None,
    now: datetime | None = None,
    incident_category: str | None = None,
    evidence_kinds: list[str] | None = None,
) -> GateVerdict:
    """Check the lawbook remediation policy for one playbook against one incident.

    Args:
        governance: Snapshot for this operation.
        playbook_id: Playbook to run.
        action_types: Action types of the playbook's steps.
        prior_runs: Non-skipped runs already recorded for the incident.
        last_run_at: Creation time of the most recent non-skipped run for the incident.
        now: Evaluation time (defaults to current UTC time).
        incident_category: Classifier category of the incident, if classified.
        evidence_kinds: Kinds of the evidence stored for the incident. The lawbook's
            required kinds for incident_category are checked only when both are given.

    Returns:
        GateVerdict with verdict DENY if any rule fails, ALLOW otherwise.
    """
    now = now or datetime.now(UTC)
    reasons: list[GateReason] = []

    if not governance.is_configured:
        reasons.append(
            GateReason("LAWBOOK_MISSING", "No active lawbook configured", "lawbook")
        )
        return GateVerdict("DENY", None, reasons)

    policy = governance.remediation
    if not policy.enabled:
        reasons.append(
            GateReason(
                "REMEDIATION_DISABLED",
                "Automated remediation is disabled by lawbook",
                "remediation.enabled",
            )
        )
    if playbook_id not in policy.allowed_playbooks:
        reasons.append(
            GateReason(
                "PLAYBOOK_NOT_ALLOWED",
                f"Playbook {playbook_id} is not in the lawbook allowlist",
                "remediation.allowed_playbooks",
            )
        )
    if ROLLBACK_DEPLOY in action_types and playbook_id not in ROLLBACK_DEPLOY_PLAYBOOKS:
        reasons.append(
            GateReason(
                "ROLLBACK_DEPLOY_NOT_ALLOWED",
                f"Action type {ROLLBACK_DEPLOY} is only allowed for redeploy-lkg, not {playbook_id}",
                "remediation.rollback_deploy",
            )
        )
    denied = sorted(set(action_types) & set(policy.denied_action_types))
    if denied:
        reasons.append(
            GateReason(
                "ACTION_TYPE_DENIED",
                f"Action types denied by lawbook: {', '.join(denied)}",
                "remediation.denied_action_types",
            )
        )
    if incident_category and evidence_kinds is not None:
        required = governance.evidence.required_kinds_by_category.get(incident_category, [])
        missing = [kind for kind in required if kind not in evidence_kinds]
        if missing:
            reasons.append(
                GateReason(
                    "EVIDENCE_MISSING",
                    f"Missing required evidence kinds: {', '.join(missing)}",
                    f"evidence.required_kinds_by_category.{incident_category}",
                )
            )
    if prior_runs >= policy.max_runs_per_incident:
        reasons.append(
            GateReason(
                "MAX_RUNS_EXCEEDED",
                f"Incident already has {prior_runs}/{policy.max_runs_per_incident} remediation runs",
                "remediation.max_runs_per_incident",
            )
        )
    if last_run_at is not None and policy.cooldown_minutes > 0:
        elapsed = now - _as_utc(last_run_at)
        if elapsed < timedelta(minutes=policy.cooldown_minutes):
            reasons.append(
                GateReason(
                    "COOLDOWN_ACTIVE",
                    f"Last remediation run was {int(elapsed.total_seconds() // 60)} minutes ago "
                    f"(cooldown {policy.cooldown_minutes})",
                    "remediation.cooldown_minutes",
                )
            )

    reasons.sort(key=lambda r: r.code)
    return GateVerdict(
        "DENY" if reasons else "ALLOW",
        governance.lawbook_version,
        reasons,
    )


def gate_idempotency_key_format(
    key: str,
    max_length: int = IDEMPOTENCY_KEY_MAX_LENGTH,
) -> GateVerdict:
    """Check that a run or step idempotency key is short and uses only [A-Za-z0-9_:-]."""
    reasons: list[GateReason] = []
    if len(key) > max_length:
        reasons.append(
            GateReason(
                "KEY_TOO_LONG",
                f"Idempotency key exceeds {max_length} characters (actual: {len(key)})",
                "idempotency_key.max_length",
            )
        )
    elif not _IDEMPOTENCY_KEY_RE.fullmatch(key):
        reasons.append(
            GateReason(
                "KEY_INVALID_CHARS",
                "Idempotency key may only contain letters, digits, hyphen, underscore and colon",
                "idempotency_key.charset",
            )
        )
    return GateVerdict("DENY" if reasons else "ALLOW", None, reasons)
