"""rerun-post-deploy-verification: re-run verification and mitigate the incident if it passes.

The incident is only marked MITIGATED when the verification ran against the same canonical
environment as the incident.
"""

from __future__ import annotations

import logging

from app.governance.environment import (
    InvalidEnvironmentError,
    normalize_environment,
    try_normalize_environment,
)
from app.incidents import store
from app.incidents.classifier import ALB_TARGET_UNHEALTHY, DEPLOY_VERIFICATION_FAILED
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
    INVALID_ENV,
    INVALID_ENVIRONMENT,
    adapter_failure,
    missing_adapter,
    resolve_environment,
)

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "rerun-post-deploy-verification"

INVALID_VERIFICATION_ENV = "INVALID_VERIFICATION_ENV"


def _target(ctx: StepContext) -> tuple[object, object]:
    ev = ctx.find_evidence("verification", "deploy_status")
    ref = ev.ref if ev is not None else {}
    return ref.get("env") or ctx.inputs.get("env"), ref.get("deploy_id") or ctx.inputs.get("deploy_id")


def run_verification(ctx: StepContext) -> StepResult:
    if ctx.find_evidence("verification", "deploy_status") is None:
        return StepResult.fail(EVIDENCE_MISSING, "No verification or deploy_status evidence found")
    raw_env, deploy_id = _target(ctx)
    env, failure = resolve_environment(raw_env, INVALID_ENVIRONMENT)
    if failure is not None:
        return failure

    runner = ctx.adapters.verification_runner
    if runner is None:
        return missing_adapter("verification runner")
    result = runner.run_verification(env, deploy_id)
    if not result.success:
        return adapter_failure(result, "VERIFICATION_EXECUTION_ERROR", "Verification did not run")
    status = result.data.get("status")
    if status != "success":
        return StepResult.fail(
            "VERIFICATION_FAILED",
            "Post-deploy verification failed",
            {"status": status, "run_id": result.data.get("run_id")},
        )
    return StepResult.ok(
        {
            "run_id": result.data.get("run_id"),
            "status": status,
            "report_hash": result.data.get("report_hash"),
            "env": result.data.get("env") or env,
            "deploy_id": deploy_id,
        }
    )


def ingest_incident_update(ctx: StepContext) -> StepResult:
    """Mark the incident MITIGATED if verification passed in the incident's environment.

    A verification env that is not a known environment fails the step. So does an incident
    env that cannot be normalized: an unrecognized target never counts as a match.
    """
    verification = ctx.inputs.get("verificationStepOutput")
    if not verification:
        return StepResult.fail(
            "MISSING_VERIFICATION_OUTPUT", "No verification output from previous step"
        )
    if verification.get("status") != "success":
        return StepResult.ok(
            {
                "message": "Verification did not pass, skipping incident update",
                "incident_id": ctx.incident_id,
                "current_status": "unchanged",
            }
        )

    verification_env = verification.get("env")
    try:
        normalized_verification = normalize_environment(verification_env)
    except InvalidEnvironmentError as exc:
        return StepResult.fail(
            INVALID_VERIFICATION_ENV,
            f"Verification environment could not be normalized: {exc}",
            {"verification_env": verification_env},
        )

    ev = ctx.find_evidence("deploy_status", "verification")
    incident_env = ev.ref.get("env") if ev is not None else None
    normalized_incident = None
    if incident_env:
        normalized_incident = try_normalize_environment(incident_env)
        if normalized_incident is None:
            return StepResult.fail(
                INVALID_ENV,
                f"Incident environment could not be normalized: {incident_env}",
                {"incident_env": incident_env},
            )

    if normalized_incident and normalized_incident != normalized_verification:
        logger.info(
            "Verification env mismatch: incident=%s incident_env=%s verification_env=%s",
            ctx.incident_key,
            normalized_incident,
            normalized_verification,
        )
        return StepResult.ok(
            {
                "message": (
                    f"Verification passed for {normalized_verification} but incident is for "
                    f"{normalized_incident}, not marking MITIGATED"
                ),
                "incident_id": ctx.incident_id,
                "current_status": "unchanged",
                "env_mismatch": True,
                "incident_env": normalized_incident,
                "verification_env": normalized_verification,
            }
        )

    store.update_incident_status(ctx.db, ctx.incident_id, "MITIGATED")
    ref = {
        "run_id": verification.get("run_id"),
        "report_hash": verification.get("report_hash"),
        "env": normalized_verification,
        "deploy_id": verification.get("deploy_id"),
        "status": verification.get("status"),
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
            "message": "Incident marked as MITIGATED",
            "incident_id": ctx.incident_id,
            "new_status": "MITIGATED",
            "verification_run_id": verification.get("run_id"),
            "env": normalized_verification,
        }
    )


def _verification_key(ctx: StepContext) -> str:
    env, deploy_id = _target(ctx)
    env = try_normalize_environment(env) or "unknown"
    params = compute_inputs_hash({"env": env, "deploy_id": deploy_id})
    return f"verification:{ctx.key_scope}:{params}"


def _incident_update_key(ctx: StepContext) -> str:
    return f"incident-update:{ctx.key_scope}"


RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version="1.0.0",
    title="Re-run Post-Deploy Verification",
    applicable_categories=(DEPLOY_VERIFICATION_FAILED, ALB_TARGET_UNHEALTHY),
    required_evidence=(
        EvidencePredicate(kinds=("verification", "deploy_status"), required_fields=("ref.env",)),
    ),
    steps=(
        StepDefinition(
            step_id="run-verification",
            action_type="RUN_VERIFICATION",
            description="Re-run post-deploy verification for the incident's environment",
            execute=run_verification,
            idempotency_key=_verification_key,
            output_name="verificationStepOutput",
        ),
        StepDefinition(
            step_id="ingest-incident-update",
            action_type="UPDATE_INCIDENT_STATUS",
            description="Mark the incident MITIGATED when verification passed in the same env",
            execute=ingest_incident_update,
            idempotency_key=_incident_update_key,
            output_name="incidentUpdateOutput",
        ),
    ),
)
