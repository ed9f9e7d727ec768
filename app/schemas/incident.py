"""Incident DTOs: mapper drafts and read models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

IncidentSeverity = Literal["YELLOW", "RED"]
IncidentStatus = Literal["OPEN", "ACKED", "MITIGATED", "CLOSED"]


class EvidenceDraft(BaseModel):
    """Evidence item produced by a mapper, before it is bound to an incident id."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: str = Field(..., min_length=1, max_length=64)
    ref: dict[str, Any]


class IncidentDraft(BaseModel):
    """Incident fields produced by a signal mapper. Input to the incident store upsert."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    incident_key: str = Field(..., min_length=1, max_length=512)
    severity: IncidentSeverity
    title: str = Field(..., min_length=1, max_length=512)
    summary: str
    classification: dict[str, Any]
    source_primary: EvidenceDraft
    tags: list[str] = Field(default_factory=list)
    first_seen_at: datetime
    last_seen_at: datetime
    evidence: list[EvidenceDraft] = Field(
        default_factory=list,
        description="Additional evidence beside source_primary",
    )


class ValidationResult(BaseModel):
    """Structured outcome of signal validation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    valid: bool
    error: str | None = None


class IncidentRead(BaseModel):
    """Read DTO for one incident."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    incident_key: str
    severity: IncidentSeverity
    status: IncidentStatus
    title: str
    summary: str | None = None
    classification: dict[str, Any] | None = None
    lawbook_version: str | None = None
    source_primary: dict[str, Any]
    tags: list[str] = Field(default_factory=list)
    first_seen_at: datetime
    last_seen_at: datetime
    created_at: datetime
    updated_at: datetime
