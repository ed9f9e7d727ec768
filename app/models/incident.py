"""Incident model: one row per distinct operational problem, keyed by incident_key."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.upsert import JSONType

INCIDENT_SEVERITIES = ("YELLOW", "RED")
INCIDENT_STATUSES = ("OPEN", "ACKED", "MITIGATED", "CLOSED")


class Incident(Base):
    """Deduplicated incident. incident_key is the natural idempotency key.

    first_seen_at/created_at are set once on insert; re-ingestion only bumps
    last_seen_at/updated_at and refreshes the descriptive fields.
    """

    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN")
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    lawbook_version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_primary: Mapped[dict] = mapped_column(JSONType, nullable=False)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    evidence: Mapped[list["IncidentEvidence"]] = relationship(
        "IncidentEvidence",
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    links: Mapped[list["IncidentLink"]] = relationship(
        "IncidentLink",
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    events: Mapped[list["IncidentEvent"]] = relationship(
        "IncidentEvent",
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
