"""Incident store: Incident, Evidence, Link and Event persistence.

Uniqueness is enforced by the database: incident upsert, evidence insert and link
insert are single INSERT ... ON CONFLICT statements, so concurrent ingestions of the
same signal cannot create duplicate rows. Functions flush but do not commit; the
orchestrator owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.canonical import content_hash
from app.db.upsert import conflict_insert
from app.models.incident import INCIDENT_SEVERITIES, INCIDENT_STATUSES, Incident
from app.models.incident_event import IncidentEvent
from app.models.incident_evidence import IncidentEvidence
from app.models.incident_link import IncidentLink
from app.schemas.incident import IncidentDraft

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


def evidence_hash(incident_id: int, kind: str, ref: dict[str, Any]) -> str:
    """SHA-256 of canonical JSON {incident_id, kind, ref}; the evidence dedup hash."""
    return content_hash({"incident_id": incident_id, "kind": kind, "ref": ref})


def upsert_incident(
    db: Session,
    draft: IncidentDraft,
    lawbook_version: str | None = None,
    now: datetime | None = None,
) -> Incident:
    """Insert or update the incident for draft.incident_key in one atomic statement.

    Update path refreshes title, summary, severity, classification, source_primary,
    tags, last_seen_at and updated_at. first_seen_at, created_at and status keep their
    stored values. A NULL lawbook_version never overwrites a stored one.
    """
    now = now or datetime.now(UTC)
    values = {
        "incident_key": draft.incident_key,
        "severity": draft.severity,
        "status": "OPEN",
        "title": draft.title,
        "summary": draft.summary,
        "classification": draft.classification,
        "lawbook_version": lawbook_version,
        "source_primary": draft.source_primary.model_dump(mode="json"),
        "tags": list(draft.tags),
        "first_seen_at": draft.first_seen_at,
        "last_seen_at": draft.last_seen_at,
        "created_at": now,
        "updated_at": now,
    }
    stmt = conflict_insert(db, Incident).values(**values)
    excluded = stmt.excluded
    set_: dict[str, Any] = {
        "title": excluded.title,
        "summary": excluded.summary,
        "severity": excluded.severity,
        "classification": excluded.classification,
        "source_primary": excluded.source_primary,
        "tags": excluded.tags,
        "last_seen_at": now,
        "updated_at": now,
    }
    if lawbook_version is not None:
        set_["lawbook_version"] = excluded.lawbook_version
    stmt = stmt.on_conflict_do_update(index_elements=["incident_key"], set_=set_)
    incident = db.scalars(
        stmt.returning(Incident),
        execution_options={"populate_existing": True},
    ).one()
    logger.debug("Incident upserted: key=%s id=%s", incident.incident_key, incident.id)
    return incident


def get_incident(db: Session, incident_id: int) -> Incident | None:
    return db.get(Incident, incident_id)


def get_incident_by_key(db: Session, incident_key: str) -> Incident | None:
    """Return the incident for incident_key, or None."""
    return db.scalars(select(Incident).where(Incident.incident_key == incident_key)).first()


def insert_evidence(db: Session, item: dict[str, Any]) -> tuple[IncidentEvidence, bool]:
    """Insert one evidence item, or resolve it to the stored duplicate.

    item carries incident_id, kind, ref and optional sha256. A conflict on
    (incident_id, kind, sha256) falls back to reading the existing row.

    Returns:
        (row, inserted) where inserted is False when an existing row was returned.
    """
    sha256 = item.get("sha256")
    stmt = (
        conflict_insert(db, IncidentEvidence)
        .values(
            incident_id=item["incident_id"],
            kind=item["kind"],
            ref=item["ref"],
            sha256=sha256,
            created_at=datetime.now(UTC),
        )
        .on_conflict_do_nothing(index_elements=["incident_id", "kind", "sha256"])
        .returning(IncidentEvidence)
    )
    row = db.scalars(stmt).first()
    if row is not None:
        return row, True
    existing = db.scalars(
        select(IncidentEvidence).where(
            IncidentEvidence.incident_id == item["incident_id"],
            IncidentEvidence.kind == item["kind"],
            IncidentEvidence.sha256 == sha256,
        )
    ).one()
    logger.debug(
        "Duplicate evidence resolved: incident_id=%s kind=%s evidence_id=%s",
        existing.incident_id,
        existing.kind,
        existing.id,
    )
    return existing, False


def add_evidence(db: Session, items: list[dict[str, Any]]) -> list[IncidentEvidence]:
    """Insert evidence items; duplicates resolve to the existing row, never an error.

    Rows with sha256=None are always inserted.

    Returns:
        One IncidentEvidence per item, in input order.
    """
    return [insert_evidence(db, item)[0] for item in items]


def list_evidence(db: Session, incident_id: int) -> list[IncidentEvidence]:
    """Return evidence for an incident, newest first."""
    return list(
        db.scalars(
            select(IncidentEvidence)
            .where(IncidentEvidence.incident_id == incident_id)
            .order_by(IncidentEvidence.created_at.desc(), IncidentEvidence.id.desc())
        )
    )


def create_link(
    db: Session,
    incident_id: int,
    timeline_node_id: str,
    link_type: str,
) -> IncidentLink:
    """Create a link or return the existing one for (incident_id, timeline_node_id, link_type)."""
    stmt = (
        conflict_insert(db, IncidentLink)
        .values(
            incident_id=incident_id,
            timeline_node_id=timeline_node_id,
            link_type=link_type,
            created_at=datetime.now(UTC),
        )
        .on_conflict_do_nothing(index_elements=["incident_id", "timeline_node_id", "link_type"])
        .returning(IncidentLink)
    )
    link = db.scalars(stmt).first()
    if link is not None:
        return link
    return db.scalars(
        select(IncidentLink).where(
            IncidentLink.incident_id == incident_id,
            IncidentLink.timeline_node_id == timeline_node_id,
            IncidentLink.link_type == link_type,
        )
    ).one()


def list_links(db: Session, incident_id: int) -> list[IncidentLink]:
    return list(
        db.scalars(
            select(IncidentLink)
            .where(IncidentLink.incident_id == incident_id)
            .order_by(IncidentLink.created_at.desc(), IncidentLink.id.desc())
        )
    )


def create_event(
    db: Session,
    incident_id: int,
    event_type: str,
    payload: dict[str, Any] | None = None,
) -> IncidentEvent:
    """Append one lifecycle event. Events are never deduplicated."""
    event = IncidentEvent(
        incident_id=incident_id,
        event_type=event_type,
        payload=payload,
        created_at=datetime.now(UTC),
    )
    db.add(event)
    db.flush()
    return event


def get_events(
    db: Session,
    incident_id: int,
    limit: int = DEFAULT_PAGE_SIZE,
) -> list[IncidentEvent]:
    """Return events for an incident ordered (created_at DESC, id DESC)."""
    return list(
        db.scalars(
            select(IncidentEvent)
            .where(IncidentEvent.incident_id == incident_id)
            .order_by(IncidentEvent.created_at.desc(), IncidentEvent.id.desc())
            .limit(limit)
        )
    )


def list_incidents(
    db: Session,
    status: str | None = None,
    severity: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> list[Incident]:
    """List incidents ordered (last_seen_at DESC, id ASC), optionally filtered.

    Raises:
        ValueError: If status or severity is not a known value.
    """
    stmt = select(Incident)
    if status is not None:
        if status not in INCIDENT_STATUSES:
            raise ValueError(f"Unknown incident status: {status}")
        stmt = stmt.where(Incident.status == status)
    if severity is not None:
        if severity not in INCIDENT_SEVERITIES:
            raise ValueError(f"Unknown incident severity: {severity}")
        stmt = stmt.where(Incident.severity == severity)
    stmt = stmt.order_by(Incident.last_seen_at.desc(), Incident.id.asc()).limit(limit).offset(offset)
    return list(db.scalars(stmt))


def update_incident_status(
    db: Session,
    incident_id: int,
    status: str,
) -> Incident | None:
    """Set incident status and append a STATUS_CHANGED event.

    Returns None if the incident does not exist. Setting the current status again
    is a no-op (no event).

    Raises:
        ValueError: If status is not a known incident status.
    """
    if status not in INCIDENT_STATUSES:
        raise ValueError(f"Unknown incident status: {status}")
    incident = db.get(Incident, incident_id)
    if incident is None:
        return None
    previous = incident.status
    if previous == status:
        return incident
    incident.status = status
    incident.updated_at = datetime.now(UTC)
    db.flush()
    create_event(db, incident_id, "STATUS_CHANGED", {"from": previous, "to": status})
    logger.info(
        "Incident status changed: id=%s key=%s %s -> %s",
        incident.id,
        incident.incident_key,
        previous,
        status,
    )
    return incident
