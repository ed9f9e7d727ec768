"""Typed governance snapshot passed explicitly through remediation and stop decisions.

Built once per operation from the active lawbook. Allowlists and ALB mappings are
read from the snapshot, never fetched mid-pipeline. Without a lawbook the snapshot
carries conservative defaults: remediation disabled, every allowlist empty (deny).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.governance.environment import try_normalize_environment
from app.governance.lawbook import (
    EcsTarget,
    EvidencePolicy,
    Lawbook,
    RemediationPolicy,
    StopRules,
    get_active_lawbook,
)

logger = logging.getLogger(__name__)

LAWBOOK_NOT_CONFIGURED = "LAWBOOK_NOT_CONFIGURED"


class LawbookNotConfiguredError(RuntimeError):
    """Raised when an operation that requires governance runs without a lawbook."""

    code = LAWBOOK_NOT_CONFIGURED

    def __init__(self, message: str = "No active lawbook configured") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class GovernanceSnapshot:
    """Governance view for one operation. lawbook=None means defaults (not configured)."""

    lawbook: Lawbook | None = None

    @property
    def is_configured(self) -> bool:
        return self.lawbook is not None

    @property
    def lawbook_version(self) -> str | None:
        return self.lawbook.version if self.lawbook else None

    @property
    def lawbook_hash(self) -> str | None:
        return self.lawbook.hash if self.lawbook else None

    @property
    def stop_rules(self) -> StopRules:
        return self.lawbook.document.stop_rules if self.lawbook else StopRules()

    @property
    def remediation(self) -> RemediationPolicy:
        return self.lawbook.document.remediation if self.lawbook else RemediationPolicy()

    @property
    def evidence(self) -> EvidencePolicy:
        return self.lawbook.document.evidence if self.lawbook else EvidencePolicy()

    def is_repo_allowed(self, owner: str, repo: str) -> bool:
        """True only if "owner/repo" is listed. Matching is case-insensitive."""
        if not self.lawbook or not owner or not repo:
            return False
        wanted = f"{owner}/{repo}".lower()
        return any(r.lower() == wanted for r in self.lawbook.document.allowlists.repositories)

    def is_ecs_target_allowed(self, env: str, cluster: str, service: str) -> bool:
        """True only if cluster and service are both allowlisted for the canonical env."""
        canonical = try_normalize_environment(env)
        if not self.lawbook or canonical is None:
            return False
        entry = self.lawbook.document.allowlists.ecs.get(canonical)
        if entry is None:
            return False
        return cluster in entry.clusters and service in entry.services

    def resolve_alb_target(self, env: str, target_group: str) -> EcsTarget | None:
        """Map an ALB target group to its ECS {cluster, service} for env, or None."""
        canonical = try_normalize_environment(env)
        if not self.lawbook or canonical is None:
            return None
        return self.lawbook.document.alb_to_ecs_mapping.get(canonical, {}).get(target_group)


def load_governance(required: bool = False) -> GovernanceSnapshot:
    """Build a snapshot from the active lawbook.

    Args:
        required: When True, a missing lawbook raises instead of falling back to defaults.

    Raises:
        LawbookNotConfiguredError: If required and no lawbook is active.
    """
    lawbook = get_active_lawbook()
    if lawbook is None:
        if required:
            raise LawbookNotConfiguredError()
        logger.warning("No active lawbook; using default governance rules")
    return GovernanceSnapshot(lawbook=lawbook)
