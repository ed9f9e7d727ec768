"""Step-level safety policies shared by playbooks.

Each check returns None when the step may proceed, or a failed StepResult carrying the
gating code. Missing configuration always denies.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from app.governance.environment import InvalidEnvironmentError, normalize_environment
from app.remediation.adapters import AdapterResult
from app.remediation.contracts import StepContext, StepResult, compute_inputs_hash

DETERMINISM_REQUIRED = "DETERMINISM_REQUIRED"
REPO_NOT_ALLOWED = "REPO_NOT_ALLOWED"
TARGET_NOT_ALLOWED = "TARGET_NOT_ALLOWED"
ENVIRONMENT_REQUIRED = "ENVIRONMENT_REQUIRED"
INVALID_ENV = "INVALID_ENV"
INVALID_ENVIRONMENT = "INVALID_ENVIRONMENT"
ADAPTER_NOT_CONFIGURED = "ADAPTER_NOT_CONFIGURED"

DETERMINISTIC_REFERENCE_FIELDS = ("image_digest", "image_digests", "cfn_change_set_id")


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo); convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def hour_bucket(now: datetime) -> str:
    """UTC hour bucket "YYYY-MM-DD-HH" used to limit disruptive steps to once per hour."""
    return as_utc(now).strftime("%Y-%m-%d-%H")


def default_idempotency_key(action_type: str, ctx: StepContext) -> str:
    return f"{action_type}:{ctx.key_scope}:{compute_inputs_hash(ctx.inputs)}"


def resolve_environment(
    env: Any,
    invalid_code: str = INVALID_ENV,
) -> tuple[str | None, StepResult | None]:
    """Normalize env for a step.

    Returns:
        (canonical_env, None) on success, or (None, failure) with ENVIRONMENT_REQUIRED
        when env is missing and invalid_code when it is not a known environment.
    """
    if env is None or (isinstance(env, str) and not env.strip()):
        return None, StepResult.fail(ENVIRONMENT_REQUIRED, "Environment is required")
    try:
        return normalize_environment(env), None
    except InvalidEnvironmentError as exc:
        return None, StepResult.fail(
            invalid_code,
            f"Invalid environment value: {exc}",
            {"env": env},
        )


def check_determinism(reference: dict[str, Any]) -> StepResult | None:
    """A redeploy must name an immutable artifact; a commit hash alone is not enough."""
    if any(reference.get(f) for f in DETERMINISTIC_REFERENCE_FIELDS):
        return None
    return StepResult.fail(
        DETERMINISM_REQUIRED,
        "Redeploy requires image_digest, image_digests or cfn_change_set_id",
        {"available": sorted(k for k, v in reference.items() if v)},
    )


def check_repo_allowed(ctx: StepContext, owner: str | None, repo: str | None) -> StepResult | None:
    """Check owner/repo against the adapter allowlist, else the lawbook repositories list."""
    allowed = False
    if owner and repo:
        if ctx.adapters.repo_allowlist is not None:
            allowed = ctx.adapters.repo_allowlist.is_allowed(owner, repo)
        else:
            allowed = ctx.governance.is_repo_allowed(owner, repo)
    if allowed:
        return None
    return StepResult.fail(
        REPO_NOT_ALLOWED,
        f"Repository {owner}/{repo} is not in the allowlist",
        {"owner": owner, "repo": repo},
    )


def check_ecs_target_allowed(
    ctx: StepContext,
    env: str,
    cluster: str,
    service: str,
) -> StepResult | None:
    """Cluster and service must both be allowlisted for env in the lawbook."""
    if ctx.governance.is_ecs_target_allowed(env, cluster, service):
        return None
    return StepResult.fail(
        TARGET_NOT_ALLOWED,
        f"ECS target {cluster}/{service} is not allowlisted for {env}",
        {"env": env, "cluster": cluster, "service": service},
    )


def missing_adapter(name: str) -> StepResult:
    return StepResult.fail(ADAPTER_NOT_CONFIGURED, f"No {name} adapter configured")


def adapter_failure(result: AdapterResult, default_code: str, default_message: str) -> StepResult:
    """Convert a failed AdapterResult into a failed StepResult, keeping the adapter's code."""
    error = result.error or {}
    return StepResult.fail(
        error.get("code") or default_code,
        error.get("message") or default_message,
        error.get("details"),
    )
