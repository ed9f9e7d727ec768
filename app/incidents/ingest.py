"""Ingestion orchestrator: signal → mapper → incident store.

ingest() never raises for bad input or storage failures; it returns an IngestResult
carrying the error instead. Unknown signal types are a programming error and raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.governance.snapshot import load_governance
from app.incidents import store
from app.incidents.mappers import get_signal_mapper
from app.schemas.incident import IncidentRead

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of one ingestion. incident is None for healthy or failed signals."""

    incident: IncidentRead | None
    is_new: bool
    evidence_added: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def ingest(db: Session, signal_type: str, signal: Any) -> IngestResult:
    """Ingest one signal.

    Validates and maps the signal; healthy signals write nothing. Otherwise upserts the
    incident by its deterministic key, appends source_primary plus mapper evidence
    (deduplicated by evidence hash) and one CREATED or UPDATED event, then commits.

    Args:
        db: Session; committed on success, rolled back on failure.
        signal_type: Registered signal type (deploy_status, verification, ecs_stopped, runner).
        signal: Raw signal payload (dict) or the signal model instance.

    Returns:
        IngestResult. evidence_added counts newly inserted evidence rows only.

    Raises:
        ValueError: If signal_type has no registered mapper.
    """
    mapper = get_signal_mapper(signal_type)

    validation = mapper.validate(signal)
    if not validation.valid:
        logger.warning("Signal rejected: type=%s error=%s", signal_type, validation.error)
        return IngestResult(incident=None, is_new=False, evidence_added=0, error=validation.error)

    try:
        draft = mapper.map(signal)
        if draft is None:
            logger.debug("Signal not actionable: type=%s", signal_type)
            return IngestResult(incident=None, is_new=False, evidence_added=0)

        lawbook_version = load_governance(required=False).lawbook_version

        is_new = store.get_incident_by_key(db, draft.incident_key) is None
        incident = store.upsert_incident(db, draft, lawbook_version=lawbook_version)

        items = [
            {
                "incident_id": incident.id,
                "kind": evidence.kind,
                "ref": evidence.ref,
                "sha256": store.evidence_hash(incident.id, evidence.kind, evidence.ref),
            }
            for evidence in (draft.source_primary, *draft.evidence)
        ]
        evidence_added = sum(1 for item in items if store.insert_evidence(db, item)[1])

        store.create_event(
            db,
            incident.id,
            "CREATED" if is_new else "UPDATED",
            {
                "signal_type": signal_type,
                "incident_key": draft.incident_key,
                "lawbook_version": lawbook_version,
            },
        )
        db.commit()
        db.refresh(incident)
    except Exception as exc:
        db.rollback()
        logger.exception("Ingestion failed: type=%s", signal_type)
        return IngestResult(incident=None, is_new=False, evidence_added=0, error=str(exc))

    logger.info(
        "Signal ingested: type=%s key=%s id=%s new=%s evidence_added=%s",
        signal_type,
        incident.incident_key,
        incident.id,
        is_new,
        evidence_added,
    )
    return IngestResult(
        incident=IncidentRead.model_validate(incident),
        is_new=is_new,
        evidence_added=evidence_added,
    )


def batch_ingest(db: Session, signals: list[tuple[str, Any]]) -> list[IngestResult]:
    """Ingest (signal_type, signal) pairs sequentially, one transaction each."""
    return [ingest(db, signal_type, signal) for signal_type, signal in signals]
