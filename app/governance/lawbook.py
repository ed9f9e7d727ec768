"""Lawbook (governance document) loader and cache.

The active lawbook is a YAML file at LAWBOOK_PATH. Its hash is the SHA-256 of the
canonical JSON of the parsed document, so formatting-only edits do not change it.
The version recorded on incidents and runs is the document's explicit ``version``
when present, otherwise the hash.

The loaded lawbook is held in an explicit cache (value + load timestamp). There is no
TTL: configuration changes call invalidate_lawbook_cache().
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.canonical import content_hash
from app.config import get_settings
from app.governance.environment import normalize_environment

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_ON_FAILURE_CLASSES = ("build deterministic", "lint error", "syntax error")


class LawbookValidationError(ValueError):
    """Raised when the lawbook file is malformed or fails schema validation."""


class StopRules(BaseModel):
    """Stop/HOLD thresholds for automated reruns. Defaults are the conservative fallback."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_reruns_per_job: int = Field(2, ge=0)
    max_total_reruns_per_pr: int = Field(5, ge=0)
    max_wait_minutes_for_green: int = Field(60, ge=0)
    cooldown_minutes: int = Field(5, ge=0)
    block_on_failure_classes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BLOCK_ON_FAILURE_CLASSES)
    )
    no_signal_change_threshold: int = Field(2, ge=1)


class RemediationPolicy(BaseModel):
    """Which playbooks may run and how often. Disabled unless a lawbook enables it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = False
    allowed_playbooks: list[str] = Field(default_factory=list)
    denied_action_types: list[str] = Field(default_factory=list)
    max_runs_per_incident: int = Field(3, ge=0)
    cooldown_minutes: int = Field(15, ge=0)


class EvidencePolicy(BaseModel):
    """Evidence kinds an incident must carry, per classifier category, before remediation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    required_kinds_by_category: dict[str, list[str]] = Field(default_factory=dict)


class EcsAllowlist(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    clusters: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)


class EcsTarget(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    cluster: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)


def _normalize_env_keys(value: dict[str, Any]) -> dict[str, Any]:
    return {normalize_environment(env): entry for env, entry in value.items()}


class Allowlists(BaseModel):
    """Target allowlists. Repositories are "owner/repo"; ECS entries are per environment."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    repositories: list[str] = Field(default_factory=list)
    ecs: dict[str, EcsAllowlist] = Field(default_factory=dict)

    @field_validator("ecs")
    @classmethod
    def canonical_ecs_envs(cls, value: dict[str, EcsAllowlist]) -> dict[str, EcsAllowlist]:
        return _normalize_env_keys(value)


class LawbookDocument(BaseModel):
    """Schema of the lawbook YAML."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: str | None = None
    stop_rules: StopRules = Field(default_factory=StopRules)
    remediation: RemediationPolicy = Field(default_factory=RemediationPolicy)
    evidence: EvidencePolicy = Field(default_factory=EvidencePolicy)
    allowlists: Allowlists = Field(default_factory=Allowlists)
    alb_to_ecs_mapping: dict[str, dict[str, EcsTarget]] = Field(
        default_factory=dict,
        description="env -> target group ARN -> {cluster, service}",
    )

    @field_validator("alb_to_ecs_mapping")
    @classmethod
    def canonical_mapping_envs(
        cls, value: dict[str, dict[str, EcsTarget]]
    ) -> dict[str, dict[str, EcsTarget]]:
        return _normalize_env_keys(value)


@dataclass(frozen=True)
class Lawbook:
    """A validated lawbook with its content hash."""

    document: LawbookDocument
    hash: str
    source: str

    @property
    def version(self) -> str:
        explicit = self.document.version
        if explicit and explicit.strip():
            return explicit.strip()
        return self.hash


def parse_lawbook(data: dict[str, Any], source: str = "<memory>") -> Lawbook:
    """Validate a parsed lawbook mapping and compute its hash.

    Raises:
        LawbookValidationError: If data does not match the lawbook schema.
    """
    if not isinstance(data, dict):
        raise LawbookValidationError("Lawbook must be a mapping")
    try:
        document = LawbookDocument.model_validate(data)
    except ValidationError as exc:
        raise LawbookValidationError(f"Lawbook failed validation: {exc}") from exc
    return Lawbook(document=document, hash=content_hash(data), source=source)


def load_lawbook(path: str | Path) -> Lawbook:
    """Load and validate the lawbook YAML at path.

    Raises:
        FileNotFoundError: If the file does not exist.
        LawbookValidationError: If the YAML is malformed or invalid.
    """
    lawbook_path = Path(path)
    try:
        with lawbook_path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise LawbookValidationError(f"Lawbook YAML is malformed: {exc}") from exc
    return parse_lawbook(data, source=str(lawbook_path))


@dataclass(frozen=True)
class CachedLawbook:
    lawbook: Lawbook
    loaded_at: datetime


class LawbookCache:
    """Explicit single-value cache for the active lawbook.

    Successful loads are cached until invalidate(); failed loads are not cached.
    """

    def __init__(self) -> None:
        self._entry: CachedLawbook | None = None
        self._lock = threading.Lock()

    @property
    def entry(self) -> CachedLawbook | None:
        return self._entry

    def get(self) -> Lawbook | None:
        """Return the active lawbook, loading it on first use. None if not configured or unloadable."""
        entry = self._entry
        if entry is not None:
            return entry.lawbook
        with self._lock:
            if self._entry is not None:
                return self._entry.lawbook
            lawbook = _load_configured_lawbook()
            if lawbook is not None:
                self._entry = CachedLawbook(lawbook=lawbook, loaded_at=datetime.now(UTC))
            return lawbook

    def set(self, lawbook: Lawbook) -> None:
        """Install a lawbook directly (e.g. after an activation event)."""
        with self._lock:
            self._entry = CachedLawbook(lawbook=lawbook, loaded_at=datetime.now(UTC))

    def invalidate(self) -> None:
        with self._lock:
            if self._entry is not None:
                logger.info("Lawbook cache invalidated: version=%s", self._entry.lawbook.version)
            self._entry = None


def _load_configured_lawbook() -> Lawbook | None:
    path = get_settings().lawbook_path
    if not path:
        logger.warning("Lawbook not configured (LAWBOOK_PATH unset)")
        return None
    try:
        lawbook = load_lawbook(path)
    except (FileNotFoundError, LawbookValidationError) as exc:
        logger.warning("Lawbook could not be loaded from %s: %s", path, exc)
        return None
    logger.info("Lawbook loaded: path=%s version=%s hash=%s", path, lawbook.version, lawbook.hash)
    return lawbook


_cache = LawbookCache()


def get_lawbook_cache() -> LawbookCache:
    return _cache


def get_active_lawbook() -> Lawbook | None:
    """Return the cached active lawbook, or None when governance is not configured."""
    return _cache.get()


def invalidate_lawbook_cache() -> None:
    """Drop the cached lawbook; the next get_active_lawbook() reloads from LAWBOOK_PATH."""
    _cache.invalidate()
