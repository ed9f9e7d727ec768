"""IncidentEvent model: append-only lifecycle log.

Rows are never updated or deleted by application code. Read order is
(created_at DESC, id DESC).
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.upsert import JSONType

INCIDENT_EVENT_TYPES = ("CREATED", "UPDATED", "STATUS_CHANGED", "CLASSIFIED")


class IncidentEvent(Base):
    """One lifecycle transition for an incident with a JSON payload."""

    __tablename__ = "incident_events"

    __table_args__ = (
        Index("ix_incident_events_incident_created", "incident_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    incident: Mapped["Incident"] = relationship("Incident", back_populates="events")
