"""redeploy-lkg: redeploy the Last Known Good artifact after a RED deploy or failed verification.

Steps: select-lkg → dispatch-deploy → post-deploy-verification → update-deploy-status.
The dispatch is limited to once per incident, environment and UTC hour.
"""

from __future__ import annotations

import logging

from app.governance.environment import try_normalize_environment
from app.incidents import store
from app.incidents.classifier import (
    ALB_TARGET_UNHEALTHY,
    DEPLOY_VERIFICATION_FAILED,
    ECS_TASK_CRASHLOOP,
)
from app.remediation.contracts import (
    EVIDENCE_MISSING,
    EvidencePredicate,
    PlaybookDefinition,
    StepContext,
    StepDefinition,
    StepResult,
    compute_inputs_hash,
)
from app.remediation.policies import (
    INVALID_ENVIRONMENT,
    adapter_failure,
    check_determinism,
    check_repo_allowed,
    hour_bucket,
    missing_adapter,
    resolve_environment,
)

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "redeploy-lkg"

NO_LKG_FOUND = "NO_LKG_FOUND"

_LKG_FIELDS = (
    "snapshot_id",
    "deploy_event_id",
    "env",
    "service",
    "version",
    "repository",
    "commit_hash",
    "image_digest",
    "image_digests",
    "cfn_change_set_id",
    "observed_at",
    "verification_run_id",
    "verification_report_hash",
)
_REFERENCE_FIELDS = ("image_digest", "image_digests", "cfn_change_set_id", "commit_hash", "version")


def _target(ctx: StepContext) -> tuple[object, object]:
    ev = ctx.find_evidence("deploy_status", "verification")
    ref = ev.ref if ev is not None else {}
    return ref.get("env") or ctx.inputs.get("env"), ref.get("service") or ctx.inputs.get("service")


def select_lkg(ctx: StepContext) -> StepResult:
    """Find the LKG deployment for the incident's environment. Requires an immutable artifact."""
    if ctx.find_evidence("deploy_status", "verification") is None:
        return StepResult.fail(EVIDENCE_MISSING, "No deploy_status or verification evidence found")
    raw_env, service = _target(ctx)
    env, failure = resolve_environment(raw_env, INVALID_ENVIRONMENT)
    if failure is not None:
        return failure

    selector = ctx.adapters.lkg_selector
    if selector is None:
        return missing_adapter("LKG selector")
    result = selector.find_last_known_good(env, service)
    if not result.success:
        return adapter_failure(result, "LKG_QUERY_FAILED", "Failed to query Last Known Good")

    lkg = result.data.get("lkg")
    if not lkg:
        target = f"env={env}" + (f", service={service}" if service else "")
        return StepResult.fail(
            NO_LKG_FOUND,
            f"No Last Known Good deployment found for {target}",
            {"env": env, "service": service},
        )
    denied = check_determinism(lkg)
    if denied is not None:
        return denied

    selected = {field: lkg.get(field) for field in _LKG_FIELDS}
    selected["env"] = env
    return StepResult.ok({"lkg": selected})


def _split_repository(repository: object) -> tuple[str | None, str | None]:
    if isinstance(repository, str) and repository.count("/") == 1:
        owner, repo = repository.split("/")
        return owner or None, repo or None
    return None, None


def dispatch_deploy(ctx: StepContext) -> StepResult:
    """Dispatch the deploy workflow for the selected LKG reference."""
    lkg = (ctx.inputs.get("lkgStepOutput") or {}).get("lkg")
    if not lkg:
        return StepResult.fail("MISSING_LKG_OUTPUT", "No LKG output from previous step")

    owner, repo = ctx.inputs.get("owner"), ctx.inputs.get("repo")
    if not (owner and repo):
        owner, repo = _split_repository(lkg.get("repository"))
    denied = check_repo_allowed(ctx, owner, repo)
    if denied is not None:
        return denied

    dispatcher = ctx.adapters.deploy_dispatcher
    if dispatcher is None:
        return missing_adapter("deploy dispatcher")
    reference = {f: lkg[f] for f in _REFERENCE_FIELDS if lkg.get(f)}
    result = dispatcher.dispatch_deploy(
        env=lkg["env"],
        service=lkg.get("service"),
        owner=owner,
        repo=repo,
        reference=reference,
        correlation_id=f"{ctx.incident_key}:{PLAYBOOK_ID}",
    )
    if not result.success:
        return adapter_failure(result, "DISPATCH_FAILED", "Deploy dispatch failed")

    logger.info(
        "LKG redeploy dispatched: incident=%s env=%s dispatch_id=%s",
        ctx.incident_key,
        lkg["env"],
        result.data.get("dispatch_id"),
    )
    return StepResult.ok(
        {
            "dispatch_id": result.data.get("dispatch_id"),
            "env": lkg["env"],
            "service": lkg.get("service"),
            "timestamp": ctx.now.isoformat(),
        }
    )


def post_deploy_verification(ctx: StepContext) -> StepResult:
    dispatch = ctx.inputs.get("dispatchStepOutput")
    if not dispatch:
        return StepResult.fail("MISSING_DISPATCH_OUTPUT", "No dispatch output from previous step")
    runner = ctx.adapters.verification_runner
    if runner is None:
        return missing_adapter("verification runner")

    result = runner.run_verification(dispatch["env"], dispatch.get("dispatch_id"))
    if not result.success:
        return adapter_failure(result, "VERIFICATION_EXECUTION_ERROR", "Verification did not run")
    status = result.data.get("status")
    if status != "success":
        return StepResult.fail(
            "VERIFICATION_FAILED",
            "Post-deploy verification failed for LKG redeploy",
            {"status": status, "run_id": result.data.get("run_id")},
        )
    return StepResult.ok(
        {
            "run_id": result.data.get("run_id"),
            "status": status,
            "report_hash": result.data.get("report_hash"),
            "env": dispatch["env"],
            "dispatch_id": dispatch.get("dispatch_id"),
        }
    )


def update_deploy_status(ctx: StepContext) -> StepResult:
    """Mark the incident MITIGATED and record verification evidence when the redeploy passed."""
    verification = ctx.inputs.get("verificationStepOutput")
    if not verification:
        return StepResult.fail(
            "MISSING_VERIFICATION_OUTPUT", "No verification output from previous step"
        )
    passed = verification.get("status") == "success"
    if passed:
        store.update_incident_status(ctx.db, ctx.incident_id, "MITIGATED")
        ref = {
            "run_id": verification.get("run_id"),
            "report_hash": verification.get("report_hash"),
            "env": verification.get("env"),
            "dispatch_id": verification.get("dispatch_id"),
            "status": "success",
            "redeploy_type": "LKG",
        }
        store.insert_evidence(
            ctx.db,
            {
                "incident_id": ctx.incident_id,
                "kind": "verification",
                "ref": ref,
                "sha256": verification.get("report_hash")
                or store.evidence_hash(ctx.incident_id, "verification", ref),
            },
        )
    return StepResult.ok(
        {
            "new_status": "GREEN" if passed else "RED",
            "env": verification.get("env"),
            "incident_id": ctx.incident_id,
            "message": (
                "LKG redeploy verified GREEN, incident marked MITIGATED"
                if passed
                else "LKG redeploy verification failed, status RED"
            ),
        }
    )


def _select_lkg_key(ctx: StepContext) -> str:
    env, service = _target(ctx)
    env = try_normalize_environment(env) or "unknown"
    return f"select-lkg:{ctx.key_scope}:{compute_inputs_hash({'env': env, 'service': service})}"


def _dispatch_key(ctx: StepContext) -> str:
    lkg = (ctx.inputs.get("lkgStepOutput") or {}).get("lkg") or {}
    env = try_normalize_environment(lkg.get("env") or _target(ctx)[0]) or "unknown"
    return f"dispatch-deploy:{ctx.key_scope}:{env}:{hour_bucket(ctx.now)}"


def _verification_key(ctx: StepContext) -> str:
    dispatch_id = (ctx.inputs.get("dispatchStepOutput") or {}).get("dispatch_id") or "unknown"
    return f"verification:{ctx.key_scope}:{compute_inputs_hash({'dispatch_id': dispatch_id})}"


def _update_status_key(ctx: StepContext) -> str:
    return f"update-status:{ctx.key_scope}"


REDEPLOY_LKG_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version="1.0.0",
    title="Redeploy Last Known Good",
    applicable_categories=(
        DEPLOY_VERIFICATION_FAILED,
        ALB_TARGET_UNHEALTHY,
        ECS_TASK_CRASHLOOP,
    ),
    required_evidence=(
        EvidencePredicate(kinds=("deploy_status", "verification"), required_fields=("ref.env",)),
    ),
    steps=(
        StepDefinition(
            step_id="select-lkg",
            action_type="ROLLBACK_DEPLOY",
            description="Select the Last Known Good deployment for the environment",
            execute=select_lkg,
            idempotency_key=_select_lkg_key,
            output_name="lkgStepOutput",
        ),
        StepDefinition(
            step_id="dispatch-deploy",
            action_type="ROLLBACK_DEPLOY",
            description="Dispatch the deploy workflow with the LKG reference",
            execute=dispatch_deploy,
            idempotency_key=_dispatch_key,
            output_name="dispatchStepOutput",
        ),
        StepDefinition(
            step_id="post-deploy-verification",
            action_type="RUN_VERIFICATION",
            description="Run post-deploy verification on the redeployed LKG",
            execute=post_deploy_verification,
            idempotency_key=_verification_key,
            output_name="verificationStepOutput",
        ),
        StepDefinition(
            step_id="update-deploy-status",
            action_type="UPDATE_INCIDENT_STATUS",
            description="Update deploy status and incident from the verification result",
            execute=update_deploy_status,
            idempotency_key=_update_status_key,
            output_name="updateStatusOutput",
        ),
    ),
)
