"""Guarded remediation: playbook contracts, registry and executor."""

from app.remediation.adapters import AdapterResult, RemediationAdapters
from app.remediation.contracts import RunRequest, RunResult, StepContext, StepResult
from app.remediation.executor import execute_playbook, execute_playbook_by_id
from app.remediation.registry import PLAYBOOK_REGISTRY, get_playbook

__all__ = [
    "PLAYBOOK_REGISTRY",
    "AdapterResult",
    "RemediationAdapters",
    "RunRequest",
    "RunResult",
    "StepContext",
    "StepResult",
    "execute_playbook",
    "execute_playbook_by_id",
    "get_playbook",
]
