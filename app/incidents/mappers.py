"""Signal → incident draft mappers.

Each mapper is a pure, deterministic function: the same signal always yields the
same draft (same incident_key, summary, tags). Healthy signals map to None and
never create or touch an incident.

Mappers are held in SIGNAL_MAPPERS keyed by signal type; new signal kinds are
added with register_signal_mapper without changing the ingestion orchestrator.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from app.schemas.incident import EvidenceDraft, IncidentDraft, ValidationResult
from app.schemas.signals import (
    DeployStatusSignal,
    EcsStoppedSignal,
    RunnerSignal,
    SignalModel,
    VerificationSignal,
    parse_timestamp,
)

UNKNOWN = "unknown"

# classification.error_code values
DEPLOY_STATUS_YELLOW = "DEPLOY_STATUS_YELLOW"
DEPLOY_STATUS_RED = "DEPLOY_STATUS_RED"
VERIFICATION_FAILED = "VERIFICATION_FAILED"
VERIFICATION_TIMEOUT = "VERIFICATION_TIMEOUT"
ECS_TASK_STOPPED = "ECS_TASK_STOPPED"
ECS_TASK_FAILED = "ECS_TASK_FAILED"
RUNNER_STEP_FAILED = "RUNNER_STEP_FAILED"
RUNNER_STEP_TIMEOUT = "RUNNER_STEP_TIMEOUT"

VERIFICATION_FAILURE_STATUSES = frozenset({"failed", "timeout"})
RUNNER_FAILURE_CONCLUSIONS = frozenset({"failure", "timeout", "cancelled"})
_ECS_ERROR_MARKERS = ("error", "fail", "crash")


# ---------------------------------------------------------------------------
# Incident keys
# ---------------------------------------------------------------------------


def deploy_status_incident_key(env: str, deploy_id: str | None, changed_at: str) -> str:
    return f"deploy_status:{env}:{deploy_id or UNKNOWN}:{changed_at}"


def verification_incident_key(deploy_id: str | None, report_hash_or_run_id: str) -> str:
    return f"verification:{deploy_id or UNKNOWN}:{report_hash_or_run_id}"


def ecs_stopped_incident_key(cluster: str, task_arn: str, stopped_at: str) -> str:
    return f"ecs_stopped:{cluster}:{task_arn}:{stopped_at}"


def runner_incident_key(run_id: str, step_name: str, conclusion: str) -> str:
    return f"runner:{run_id}:{step_name}:{conclusion}"


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def map_deploy_status(signal: DeployStatusSignal) -> IncidentDraft | None:
    """Map a deploy status change. GREEN → None; YELLOW/RED → incident of that severity."""
    if signal.status == "GREEN":
        return None

    deploy_id = signal.deploy_id or UNKNOWN
    reasons = [r.model_dump() for r in signal.reasons]
    summary = "\n".join(f"[{r.severity}] {r.code}: {r.message}" for r in signal.reasons)

    tags = ["deploy_status", signal.env, f"status:{signal.status.lower()}"]
    if deploy_id != UNKNOWN:
        tags.append(f"deploy:{deploy_id}")

    seen_at = parse_timestamp(signal.changed_at)
    return IncidentDraft(
        incident_key=deploy_status_incident_key(signal.env, deploy_id, signal.changed_at),
        severity=signal.status,
        title=f"Deploy status {signal.status} in {signal.env}",
        summary=summary,
        classification={
            "error_code": DEPLOY_STATUS_YELLOW if signal.status == "YELLOW" else DEPLOY_STATUS_RED,
            "signal_type": "deploy_status",
            "auto_generated": True,
        },
        source_primary=EvidenceDraft(
            kind="deploy_status",
            ref={
                "env": signal.env,
                "status": signal.status,
                "changed_at": signal.changed_at,
                "deploy_id": deploy_id,
                "reasons": reasons,
            },
        ),
        tags=tags,
        first_seen_at=seen_at,
        last_seen_at=seen_at,
        evidence=[
            EvidenceDraft(
                kind="deploy_status",
                ref={
                    "env": signal.env,
                    "status": signal.status,
                    "changed_at": signal.changed_at,
                    "signals": dict(signal.signals),
                },
            )
        ],
    )


def map_verification(signal: VerificationSignal) -> IncidentDraft | None:
    """Map a verification run. Only failed/timeout runs produce an (always RED) incident."""
    if signal.status not in VERIFICATION_FAILURE_STATUSES:
        return None

    deploy_id = signal.deploy_id or UNKNOWN
    failed_steps = signal.failed_steps or []

    summary = f"Playbook: {signal.playbook_id} v{signal.playbook_version}\n"
    summary += f"Run: {signal.run_id}\n"
    summary += f"Status: {signal.status}\n"
    if failed_steps:
        summary += "\nFailed steps:\n"
        for step in failed_steps:
            summary += f"- {step.title} ({step.id})"
            if step.error:
                summary += f": {step.error}"
            summary += "\n"

    tags = [
        "verification",
        signal.env,
        f"playbook:{signal.playbook_id}",
        f"status:{signal.status}",
    ]
    if deploy_id != UNKNOWN:
        tags.append(f"deploy:{deploy_id}")

    seen_at = parse_timestamp(signal.completed_at)
    return IncidentDraft(
        incident_key=verification_incident_key(deploy_id, signal.report_hash or signal.run_id),
        severity="RED",
        title=f"Post-deploy verification {signal.status} in {signal.env}",
        summary=summary,
        classification={
            "error_code": (
                VERIFICATION_TIMEOUT if signal.status == "timeout" else VERIFICATION_FAILED
            ),
            "signal_type": "verification",
            "playbook_id": signal.playbook_id,
            "playbook_version": signal.playbook_version,
            "auto_generated": True,
        },
        source_primary=EvidenceDraft(
            kind="verification",
            ref={
                "run_id": signal.run_id,
                "playbook_id": signal.playbook_id,
                "playbook_version": signal.playbook_version,
                "env": signal.env,
                "status": signal.status,
                "completed_at": signal.completed_at,
                "deploy_id": deploy_id,
                "failed_steps": [s.model_dump() for s in failed_steps] or None,
            },
        ),
        tags=tags,
        first_seen_at=seen_at,
        last_seen_at=seen_at,
        evidence=[
            EvidenceDraft(
                kind="verification",
                ref={
                    "run_id": signal.run_id,
                    "playbook_id": signal.playbook_id,
                    "env": signal.env,
                    "status": signal.status,
                    "completed_at": signal.completed_at,
                    "deploy_id": deploy_id,
                    "report_hash": signal.report_hash,
                },
            )
        ],
    )


def _ecs_is_failure(signal: EcsStoppedSignal) -> bool:
    if signal.exit_code is not None and signal.exit_code != 0:
        return True
    reason = (signal.stopped_reason or "").lower()
    return any(marker in reason for marker in _ECS_ERROR_MARKERS)


def _task_definition_family(task_definition: str) -> str:
    # arn:aws:ecs:region:account:task-definition/name:revision or name:revision
    return task_definition.split("/")[-1].split(":")[0]


def map_ecs_stopped(signal: EcsStoppedSignal) -> IncidentDraft | None:
    """Map an ECS task stop. Non-zero exit or error-bearing reason → RED, else YELLOW."""
    failed = _ecs_is_failure(signal)
    task_id = signal.task_arn.split("/")[-1] or signal.task_arn

    summary = f"Task: {signal.task_arn}\n"
    if signal.task_definition:
        summary += f"Task Definition: {signal.task_definition}\n"
    summary += f"Last Status: {signal.last_status or UNKNOWN}\n"
    if signal.exit_code is not None:
        summary += f"Exit Code: {signal.exit_code}\n"
    if signal.stopped_reason:
        summary += f"Stopped Reason: {signal.stopped_reason}\n"
    if signal.containers:
        summary += "\nContainers:\n"
        for container in signal.containers:
            summary += f"- {container.name}"
            if container.exit_code is not None:
                summary += f" (exit: {container.exit_code})"
            if container.reason:
                summary += f": {container.reason}"
            summary += "\n"

    tags = ["ecs", "task_stopped", f"cluster:{signal.cluster}"]
    if signal.task_definition:
        family = _task_definition_family(signal.task_definition)
        if family:
            tags.append(f"task_def:{family}")

    seen_at = parse_timestamp(signal.stopped_at)
    return IncidentDraft(
        incident_key=ecs_stopped_incident_key(signal.cluster, signal.task_arn, signal.stopped_at),
        severity="RED" if failed else "YELLOW",
        title=f"ECS task stopped in {signal.cluster}: {task_id}",
        summary=summary,
        classification={
            "error_code": ECS_TASK_FAILED if failed else ECS_TASK_STOPPED,
            "signal_type": "ecs_stopped",
            "auto_generated": True,
        },
        source_primary=EvidenceDraft(
            kind="ecs_event",
            ref={
                "cluster": signal.cluster,
                "task_arn": signal.task_arn,
                "task_definition": signal.task_definition,
                "stopped_at": signal.stopped_at,
                "stopped_reason": signal.stopped_reason,
                "exit_code": signal.exit_code,
                "last_status": signal.last_status,
                "containers": (
                    [c.model_dump() for c in signal.containers] if signal.containers else None
                ),
            },
        ),
        tags=tags,
        first_seen_at=seen_at,
        last_seen_at=seen_at,
        evidence=[
            EvidenceDraft(
                kind="ecs",
                ref={
                    "cluster": signal.cluster,
                    "task_arn": signal.task_arn,
                    "stopped_at": signal.stopped_at,
                    "stopped_reason": signal.stopped_reason,
                    "exit_code": signal.exit_code,
                },
            )
        ],
    )


def map_runner(signal: RunnerSignal) -> IncidentDraft | None:
    """Map a CI step conclusion. cancelled → YELLOW; failure/timeout → RED; others → None."""
    if signal.conclusion not in RUNNER_FAILURE_CONCLUSIONS:
        return None

    if signal.workflow_name:
        title = f"Workflow {signal.workflow_name} {signal.conclusion}: {signal.step_name}"
    else:
        title = f"GitHub Actions {signal.conclusion}: {signal.step_name}"

    summary = f"Run ID: {signal.run_id}\n"
    if signal.workflow_name:
        summary += f"Workflow: {signal.workflow_name}\n"
    if signal.job_name:
        summary += f"Job: {signal.job_name}\n"
    summary += f"Step: {signal.step_name}\n"
    summary += f"Conclusion: {signal.conclusion}\n"
    if signal.repository:
        summary += f"Repository: {signal.repository}\n"
    if signal.ref:
        summary += f"Ref: {signal.ref}\n"
    if signal.error_message:
        summary += f"\nError:\n{signal.error_message}\n"
    if signal.run_url:
        summary += f"\nRun URL: {signal.run_url}\n"

    tags = ["github_runner", f"conclusion:{signal.conclusion}"]
    if signal.workflow_name:
        tags.append(f"workflow:{signal.workflow_name}")
    if signal.repository:
        tags.append(f"repo:{signal.repository}")

    seen_at = parse_timestamp(signal.completed_at)
    return IncidentDraft(
        incident_key=runner_incident_key(signal.run_id, signal.step_name, signal.conclusion),
        severity="YELLOW" if signal.conclusion == "cancelled" else "RED",
        title=title,
        summary=summary,
        classification={
            "error_code": (
                RUNNER_STEP_TIMEOUT if signal.conclusion == "timeout" else RUNNER_STEP_FAILED
            ),
            "signal_type": "runner",
            "conclusion": signal.conclusion,
            "auto_generated": True,
        },
        source_primary=EvidenceDraft(
            kind="runner",
            ref={
                "run_id": signal.run_id,
                "run_url": signal.run_url,
                "step_name": signal.step_name,
                "conclusion": signal.conclusion,
                "completed_at": signal.completed_at,
                "error_message": signal.error_message,
                "job_name": signal.job_name,
                "workflow_name": signal.workflow_name,
                "repository": signal.repository,
                "ref": signal.ref,
            },
        ),
        tags=tags,
        first_seen_at=seen_at,
        last_seen_at=seen_at,
        evidence=[
            EvidenceDraft(
                kind="github_run",
                ref={
                    "run_id": signal.run_id,
                    "run_url": signal.run_url,
                    "step_name": signal.step_name,
                    "conclusion": signal.conclusion,
                    "completed_at": signal.completed_at,
                },
            )
        ],
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_signal(model: type[SignalModel], raw: Any) -> ValidationResult:
    """Validate raw signal payload against model. Never raises.

    Returns:
        ValidationResult(valid=True) or ValidationResult(valid=False, error="<field>: <msg>").
    """
    if isinstance(raw, model):
        return ValidationResult(valid=True)
    if not isinstance(raw, dict | BaseModel):
        return ValidationResult(valid=False, error="Signal must be an object")
    try:
        model.model_validate(raw if isinstance(raw, dict) else raw.model_dump())
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "signal"
        return ValidationResult(valid=False, error=f"{field}: {first['msg']}")
    return ValidationResult(valid=True)


def validate_deploy_status_signal(raw: Any) -> ValidationResult:
    return validate_signal(DeployStatusSignal, raw)


def validate_verification_signal(raw: Any) -> ValidationResult:
    return validate_signal(VerificationSignal, raw)


def validate_ecs_stopped_signal(raw: Any) -> ValidationResult:
    return validate_signal(EcsStoppedSignal, raw)


def validate_runner_signal(raw: Any) -> ValidationResult:
    return validate_signal(RunnerSignal, raw)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignalMapper:
    """Registry entry: signal model plus the pure mapping function for one signal type."""

    signal_type: str
    model: type[SignalModel]
    map_signal: Callable[[Any], IncidentDraft | None]

    def validate(self, raw: Any) -> ValidationResult:
        return validate_signal(self.model, raw)

    def parse(self, raw: Any) -> SignalModel:
        """Coerce raw payload into the signal model. Call validate() first."""
        if isinstance(raw, self.model):
            return raw
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        return self.model.model_validate(raw)

    def map(self, raw: Any) -> IncidentDraft | None:
        return self.map_signal(self.parse(raw))


SIGNAL_MAPPERS: dict[str, SignalMapper] = {
    "deploy_status": SignalMapper("deploy_status", DeployStatusSignal, map_deploy_status),
    "verification": SignalMapper("verification", VerificationSignal, map_verification),
    "ecs_stopped": SignalMapper("ecs_stopped", EcsStoppedSignal, map_ecs_stopped),
    "runner": SignalMapper("runner", RunnerSignal, map_runner),
}


def register_signal_mapper(mapper: SignalMapper) -> None:
    """Add or replace the mapper for mapper.signal_type."""
    SIGNAL_MAPPERS[mapper.signal_type] = mapper


def get_signal_mapper(signal_type: str) -> SignalMapper:
    """Return the registered mapper. Raises ValueError for unknown signal types."""
    mapper = SIGNAL_MAPPERS.get(signal_type)
    if mapper is None:
        raise ValueError(f"Unknown signal_type: {signal_type}")
    return mapper
