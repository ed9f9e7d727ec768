"""Playbook registry keyed by playbook id."""

from __future__ import annotations

from app.remediation.contracts import PlaybookDefinition
from app.remediation.playbooks import (
    REDEPLOY_LKG_PLAYBOOK,
    RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK,
    SERVICE_HEALTH_RESET_PLAYBOOK,
)

PLAYBOOK_REGISTRY: dict[str, PlaybookDefinition] = {
    p.id: p
    for p in (
        REDEPLOY_LKG_PLAYBOOK,
        RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK,
        SERVICE_HEALTH_RESET_PLAYBOOK,
    )
}


def get_playbook(playbook_id: str) -> PlaybookDefinition:
    """Return the registered playbook. Raises ValueError for unknown ids."""
    playbook = PLAYBOOK_REGISTRY.get(playbook_id)
    if playbook is None:
        raise ValueError(f"Unknown playbook_id: {playbook_id}")
    return playbook


def applicable_playbooks(category: str | None) -> list[PlaybookDefinition]:
    """Playbooks whose applicable categories include category, ordered by id."""
    return sorted(
        (p for p in PLAYBOOK_REGISTRY.values() if p.is_applicable(category)),
        key=lambda p: p.id,
    )
