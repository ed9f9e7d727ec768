"""service-health-reset: force a new ECS deployment for an unhealthy service, then verify.

Steps: snapshot-state → apply-reset → wait-observe → post-verification → update-status.

ALB evidence is resolved to an ECS {cluster, service} only through the lawbook
alb_to_ecs_mapping for the canonical environment. The reset itself is limited to once per
incident, environment and UTC hour, and only for allowlisted targets.
"""

from __future__ import annotations

import logging

from app.config import get_settings
from app.governance.environment import InvalidEnvironmentError, normalize_environment
from app.incidents import store
from app.incidents.classifier import ALB_TARGET_UNHEALTHY, ECS_TASK_CRASHLOOP
from app.remediation.contracts import (
    EVIDENCE_MISSING,
    EvidencePredicate,
    PlaybookDefinition,
    StepContext,
    StepDefinition,
    StepResult,
)
from app.remediation.policies import (
    ENVIRONMENT_REQUIRED,
    INVALID_ENV,
    INVALID_ENVIRONMENT,
    adapter_failure,
    check_ecs_target_allowed,
    hour_bucket,
    missing_adapter,
    resolve_environment,
)

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "service-health-reset"

ALB_MAPPING_REQUIRED = "ALB_MAPPING_REQUIRED"
EVIDENCE_INSUFFICIENT = "EVIDENCE_INSUFFICIENT"


def snapshot_state(ctx: StepContext) -> StepResult:
    """Resolve the ECS target and capture its current state."""
    ev = ctx.find_evidence("ecs", "alb")
    if ev is None:
        return StepResult.fail(EVIDENCE_MISSING, "No ECS or ALB evidence found")
    ref = ev.ref or {}
    cluster = ref.get("cluster") or ctx.inputs.get("cluster")
    service = ref.get("service") or ref.get("service_name") or ctx.inputs.get("service")

    env, failure = resolve_environment(
        ref.get("env") or ref.get("environment") or ctx.inputs.get("env"),
        INVALID_ENVIRONMENT,
    )
    if failure is not None:
        return failure

    if ev.kind == "alb" and not (cluster and service):
        target_group = ref.get("target_group_arn") or ref.get("target_group")
        if not target_group:
            return StepResult.fail(
                EVIDENCE_INSUFFICIENT,
                "ALB evidence requires target_group_arn or explicit {cluster, service}",
                {"evidence_kind": ev.kind},
            )
        target = ctx.governance.resolve_alb_target(env, target_group)
        if target is None:
            return StepResult.fail(
                ALB_MAPPING_REQUIRED,
                f"No lawbook mapping found for ALB target group {target_group} in {env}",
                {"target_group": target_group, "env": env},
            )
        cluster, service = target.cluster, target.service

    if not (cluster and service):
        return StepResult.fail(
            EVIDENCE_INSUFFICIENT,
            "Missing required parameters: cluster and service",
            {"cluster": cluster, "service": service, "env": env},
        )

    ecs = ctx.adapters.ecs
    if ecs is None:
        return missing_adapter("ECS")
    result = ecs.describe_service(cluster, service)
    if not result.success:
        return adapter_failure(result, "DESCRIBE_FAILED", "Failed to describe ECS service")

    info = result.data
    return StepResult.ok(
        {
            "cluster": cluster,
            "service": service,
            "env": env,
            "service_arn": info.get("service_arn"),
            "desired_count": info.get("desired_count"),
            "running_count": info.get("running_count"),
            "task_definition": info.get("task_definition"),
            "deployments": info.get("deployments"),
            "snapshot_at": ctx.now.isoformat(),
        }
    )


def apply_reset(ctx: StepContext) -> StepResult:
    """Force a new deployment of the allowlisted target."""
    snapshot = ctx.inputs.get("snapshotOutput") or {}
    cluster, service, env = snapshot.get("cluster"), snapshot.get("service"), snapshot.get("env")
    if not (cluster and service):
        return StepResult.fail("INVALID_INPUT", "Missing cluster or service from snapshot step")
    if not env:
        return StepResult.fail(ENVIRONMENT_REQUIRED, "Environment is required for a service reset")
    denied = check_ecs_target_allowed(ctx, env, cluster, service)
    if denied is not None:
        return denied

    ecs = ctx.adapters.ecs
    if ecs is None:
        return missing_adapter("ECS")
    result = ecs.force_new_deployment(
        cluster,
        service,
        env,
        correlation_id=f"{ctx.incident_key}:health-reset",
    )
    if not result.success:
        return adapter_failure(result, "RESET_FAILED", "Force new deployment failed")

    logger.info(
        "Service reset applied: incident=%s env=%s cluster=%s service=%s",
        ctx.incident_key,
        env,
        cluster,
        service,
    )
    return StepResult.ok(
        {
            "cluster": cluster,
            "service": service,
            "env": env,
            "service_arn": result.data.get("service_arn"),
            "deployment_id": result.data.get("deployment_id"),
            "reset_at": ctx.now.isoformat(),
        }
    )


def wait_and_observe(ctx: StepContext) -> StepResult:
    reset = ctx.inputs.get("resetOutput") or {}
    cluster, service = reset.get("cluster"), reset.get("service")
    if not (cluster and service):
        return StepResult.fail("INVALID_INPUT", "Missing cluster or service from reset step")
    ecs = ctx.adapters.ecs
    if ecs is None:
        return missing_adapter("ECS")

    max_wait = int(ctx.inputs.get("max_wait_seconds") or get_settings().remediation_max_wait_seconds)
    result = ecs.poll_service_stability(cluster, service, max_wait_seconds=max_wait)
    if not result.success:
        return adapter_failure(result, "OBSERVE_FAILED", "Failed to observe service stability")
    return StepResult.ok(
        {
            "stable": result.data.get("stable") is True,
            "final_state": result.data.get("final_state"),
            "observed_at": ctx.now.isoformat(),
        }
    )


def post_verification(ctx: StepContext) -> StepResult:
    """Run verification for the target env. A failed verification is reported, not raised."""
    env = (ctx.inputs.get("snapshotOutput") or {}).get("env")
    if not env:
        return StepResult.ok(
            {"status": "skipped", "reason": "No environment specified, skipping verification"}
        )
    runner = ctx.adapters.verification_runner
    if runner is None:
        return missing_adapter("verification runner")
    result = runner.run_verification(env, None)
    if not result.success:
        return adapter_failure(result, "VERIFICATION_EXECUTION_ERROR", "Verification did not run")
    return StepResult.ok(
        {
            "status": result.data.get("status"),
            "env": result.data.get("env") or env,
            "report_hash": result.data.get("report_hash"),
            "verified_at": ctx.now.isoformat(),
        }
    )


def update_status(ctx: StepContext) -> StepResult:
    """MITIGATED when stable, verified and same env; otherwise ACKED."""
    verification = ctx.inputs.get("verificationOutput") or {}
    observed = ctx.inputs.get("observeOutput") or {}
    snapshot = ctx.inputs.get("snapshotOutput") or {}

    stable = observed.get("stable") is True
    verification_status = verification.get("status")
    verified = verification_status in ("success", "skipped")

    env_matches = True
    if verification_status == "success":
        target_env, verification_env = snapshot.get("env"), verification.get("env")
        if not verification_env:
            env_matches = False
        elif target_env:
            try:
                env_matches = normalize_environment(target_env) == normalize_environment(
                    verification_env
                )
            except InvalidEnvironmentError as exc:
                return StepResult.fail(
                    INVALID_ENV,
                    f"Invalid environment in verification: {exc}",
                    {"target_env": target_env, "verification_env": verification_env},
                )

    new_status = "MITIGATED" if stable and verified and env_matches else "ACKED"
    store.update_incident_status(ctx.db, ctx.incident_id, new_status)
    return StepResult.ok(
        {
            "new_status": new_status,
            "service_stable": stable,
            "verification_passed": verified,
            "env_matches": env_matches,
            "incident_id": ctx.incident_id,
        }
    )


def _snapshot_key(ctx: StepContext) -> str:
    return f"snapshot-state:{ctx.key_scope}:run-{ctx.run_id}"


def _reset_key(ctx: StepContext) -> str:
    env = (ctx.inputs.get("snapshotOutput") or {}).get("env") or "unknown"
    return f"{ctx.key_scope}:{env}:reset:{hour_bucket(ctx.now)}"


def _observe_key(ctx: StepContext) -> str:
    return f"wait-observe:{ctx.key_scope}:run-{ctx.run_id}"


def _verification_key(ctx: StepContext) -> str:
    return f"post-verification:{ctx.key_scope}:run-{ctx.run_id}"


def _status_key(ctx: StepContext) -> str:
    return f"update-status:{ctx.key_scope}:run-{ctx.run_id}"


SERVICE_HEALTH_RESET_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version="1.0.0",
    title="Service Health Reset",
    applicable_categories=(ALB_TARGET_UNHEALTHY, ECS_TASK_CRASHLOOP),
    required_evidence=(EvidencePredicate(kinds=("ecs", "alb"), required_fields=("ref.env",)),),
    steps=(
        StepDefinition(
            step_id="snapshot-state",
            action_type="SNAPSHOT_SERVICE_STATE",
            description="Resolve the ECS target and snapshot its state",
            execute=snapshot_state,
            idempotency_key=_snapshot_key,
            output_name="snapshotOutput",
        ),
        StepDefinition(
            step_id="apply-reset",
            action_type="FORCE_NEW_DEPLOYMENT",
            description="Force a new deployment of the service",
            execute=apply_reset,
            idempotency_key=_reset_key,
            output_name="resetOutput",
        ),
        StepDefinition(
            step_id="wait-observe",
            action_type="POLL_SERVICE_HEALTH",
            description="Wait for the service to become stable",
            execute=wait_and_observe,
            idempotency_key=_observe_key,
            output_name="observeOutput",
        ),
        StepDefinition(
            step_id="post-verification",
            action_type="RUN_VERIFICATION",
            description="Run post-reset verification",
            execute=post_verification,
            idempotency_key=_verification_key,
            output_name="verificationOutput",
        ),
        StepDefinition(
            step_id="update-status",
            action_type="UPDATE_INCIDENT_STATUS",
            description="Mark the incident MITIGATED or ACKED",
            execute=update_status,
            idempotency_key=_status_key,
            output_name="statusOutput",
        ),
    ),
)
