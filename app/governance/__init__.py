"""Governance: lawbook loading/caching, environment normalization, guardrail gates."""

from app.governance.environment import (
    InvalidEnvironmentError,
    environments_match,
    normalize_environment,
    try_normalize_environment,
)
from app.governance.gates import GateReason, GateVerdict, gate_playbook_allowed
from app.governance.lawbook import (
    Lawbook,
    LawbookValidationError,
    get_active_lawbook,
    invalidate_lawbook_cache,
    load_lawbook,
    parse_lawbook,
)
from app.governance.snapshot import (
    LAWBOOK_NOT_CONFIGURED,
    GovernanceSnapshot,
    LawbookNotConfiguredError,
    load_governance,
)

__all__ = [
    "LAWBOOK_NOT_CONFIGURED",
    "GateReason",
    "GateVerdict",
    "GovernanceSnapshot",
    "InvalidEnvironmentError",
    "Lawbook",
    "LawbookNotConfiguredError",
    "LawbookValidationError",
    "environments_match",
    "gate_playbook_allowed",
    "get_active_lawbook",
    "invalidate_lawbook_cache",
    "load_governance",
    "load_lawbook",
    "normalize_environment",
    "parse_lawbook",
    "try_normalize_environment",
]
