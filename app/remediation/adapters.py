"""External adapter contracts consumed by playbook steps.

Concrete implementations (workflow dispatch, ECS control, LKG lookup) live outside
this package. Steps receive them bundled in RemediationAdapters via the StepContext.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class AdapterResult:
    """Structured adapter outcome. error is {code, message, ...} when success is False."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None


class LkgSelector(Protocol):
    def find_last_known_good(self, env: str, service: str | None) -> AdapterResult:
        """Return data {"lkg": {...}} for the newest GREEN, verified deploy; data {} if none."""
        ...


class DeployDispatcher(Protocol):
    def dispatch_deploy(
        self,
        env: str,
        service: str | None,
        owner: str,
        repo: str,
        reference: dict[str, Any],
        correlation_id: str,
    ) -> AdapterResult:
        """Trigger a deploy of reference; data carries dispatch_id."""
        ...


class VerificationRunner(Protocol):
    def run_verification(self, env: str, deploy_id: str | None) -> AdapterResult:
        """Run post-deploy verification; data carries run_id, status and report_hash."""
        ...


class EcsController(Protocol):
    def describe_service(self, cluster: str, service: str) -> AdapterResult: ...

    def force_new_deployment(
        self,
        cluster: str,
        service: str,
        env: str,
        correlation_id: str,
    ) -> AdapterResult: ...

    def poll_service_stability(
        self,
        cluster: str,
        service: str,
        max_wait_seconds: int,
    ) -> AdapterResult:
        """Poll until stable or max_wait_seconds elapse; data carries stable and final_state."""
        ...


class RepoAllowlist(Protocol):
    def is_allowed(self, owner: str, repo: str) -> bool: ...


@dataclass
class RemediationAdapters:
    """Adapters available to steps. A missing adapter fails the step that needs it."""

    lkg_selector: LkgSelector | None = None
    deploy_dispatcher: DeployDispatcher | None = None
    verification_runner: VerificationRunner | None = None
    ecs: EcsController | None = None
    repo_allowlist: RepoAllowlist | None = None
