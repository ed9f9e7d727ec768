"""Remediation playbook contracts: definitions, step context and results.

A playbook is an ordered tuple of StepDefinition descriptors. The executor drives them
with one generic loop; each step receives a StepContext whose inputs accumulate prior
step outputs under the step's output_name.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.canonical import content_hash, sha256_hex
from app.governance.gates import gate_idempotency_key_format

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.governance.snapshot import GovernanceSnapshot
    from app.models.incident_evidence import IncidentEvidence
    from app.remediation.adapters import RemediationAdapters

# Run statuses
PLANNED = "PLANNED"
RUNNING = "RUNNING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"

# Skip reasons
EVIDENCE_MISSING = "EVIDENCE_MISSING"
LAWBOOK_DENIED = "LAWBOOK_DENIED"

# Error codes
INCIDENT_NOT_FOUND = "INCIDENT_NOT_FOUND"
EXECUTION_ERROR = "EXECUTION_ERROR"
INVALID_IDEMPOTENCY_KEY = "INVALID_IDEMPOTENCY_KEY"

ACTION_TYPES = (
    "RESTART_SERVICE",
    "ROLLBACK_DEPLOY",
    "SCALE_UP",
    "SCALE_DOWN",
    "DRAIN_TASKS",
    "NOTIFY_SLACK",
    "CREATE_ISSUE",
    "RUN_VERIFICATION",
    "SNAPSHOT_SERVICE_STATE",
    "FORCE_NEW_DEPLOYMENT",
    "POLL_SERVICE_HEALTH",
    "UPDATE_INCIDENT_STATUS",
)


def compute_inputs_hash(inputs: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON of inputs (key order does not matter)."""
    return content_hash(inputs)


# Longest incident key embedded verbatim in step idempotency keys.
KEY_SCOPE_MAX_LENGTH = 128


def idempotency_scope(incident_key: str) -> str:
    """incident_key if it is short and key-safe, otherwise "ik-" plus its SHA-256."""
    if gate_idempotency_key_format(incident_key, KEY_SCOPE_MAX_LENGTH).allowed:
        return incident_key
    return f"ik-{sha256_hex(incident_key)}"


def compute_run_key(incident_key: str, playbook_id: str, inputs_hash: str) -> str:
    """Run idempotency key: SHA-256 of canonical JSON {incident_key, playbook_id, inputs_hash}."""
    return content_hash(
        {"incident_key": incident_key, "playbook_id": playbook_id, "inputs_hash": inputs_hash}
    )


def _resolve_path(obj: Any, path: str) -> Any:
    for part in path.split("."):
        if isinstance(obj, dict):
            obj = obj.get(part)
        else:
            obj = getattr(obj, part, None)
        if obj is None:
            return None
    return obj


@dataclass(frozen=True)
class EvidencePredicate:
    """Satisfied by any evidence whose kind is in kinds and whose dotted fields are non-null."""

    kinds: tuple[str, ...]
    required_fields: tuple[str, ...] = ()

    def matches(self, evidence: IncidentEvidence) -> bool:
        if evidence.kind not in self.kinds:
            return False
        return all(_resolve_path(evidence, f) is not None for f in self.required_fields)

    def is_satisfied(self, evidence: list[IncidentEvidence]) -> bool:
        return any(self.matches(e) for e in evidence)

    def describe(self) -> dict[str, Any]:
        return {"kinds": list(self.kinds), "required_fields": list(self.required_fields)}


@dataclass(frozen=True)
class StepError:
    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step. Use StepResult.ok() / StepResult.fail()."""

    success: bool
    output: dict[str, Any] | None = None
    error: StepError | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None) -> StepResult:
        return cls(success=True, output=output or {})

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> StepResult:
        return cls(success=False, error=StepError(code, message, details))


@dataclass
class StepContext:
    """Everything a step may read. Adapters and governance are passed in, never looked up."""

    incident_id: int
    incident_key: str
    run_id: int
    lawbook_version: str | None
    evidence: list[IncidentEvidence]
    inputs: dict[str, Any]
    governance: GovernanceSnapshot
    adapters: RemediationAdapters
    db: Session
    now: datetime

    def find_evidence(self, *kinds: str) -> IncidentEvidence | None:
        """First evidence (newest first) whose kind is one of kinds."""
        return next((e for e in self.evidence if e.kind in kinds), None)

    @property
    def key_scope(self) -> str:
        """Incident part of step idempotency keys."""
        return idempotency_scope(self.incident_key)


StepExecutor = Callable[[StepContext], StepResult]
IdempotencyKeyFn = Callable[[StepContext], str]


@dataclass(frozen=True)
class StepDefinition:
    step_id: str
    action_type: str
    description: str
    execute: StepExecutor
    idempotency_key: IdempotencyKeyFn | None = None
    output_name: str | None = None

    def __post_init__(self) -> None:
        if self.action_type not in ACTION_TYPES:
            raise ValueError(f"Unknown action_type: {self.action_type}")


@dataclass(frozen=True)
class PlaybookDefinition:
    id: str
    version: str
    title: str
    applicable_categories: tuple[str, ...]
    required_evidence: tuple[EvidencePredicate, ...]
    steps: tuple[StepDefinition, ...]

    @property
    def action_types(self) -> list[str]:
        return sorted({s.action_type for s in self.steps})

    def is_applicable(self, category: str | None) -> bool:
        return category in self.applicable_categories


@dataclass
class RunRequest:
    """Request to execute a playbook. One of incident_id / incident_key is required."""

    playbook_id: str
    incident_id: int | None = None
    incident_key: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepOutcome:
    step_id: str
    action_type: str
    status: str
    idempotency_key: str
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    reused: bool = False


@dataclass
class RunResult:
    """Executor outcome. run_id is None only when no run row was persisted."""

    status: str
    run_id: int | None = None
    run_key: str | None = None
    playbook_id: str | None = None
    incident_id: int | None = None
    skip_reason: str | None = None
    missing_evidence: list[dict[str, Any]] = field(default_factory=list)
    steps: list[StepOutcome] = field(default_factory=list)
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    message: str | None = None
    lawbook_version: str | None = None
