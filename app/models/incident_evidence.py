"""IncidentEvidence model: immutable observation attached to an incident."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.upsert import JSONType


class IncidentEvidence(Base):
    """Evidence row. Unique per (incident_id, kind, sha256); NULL sha256 never conflicts."""

    __tablename__ = "incident_evidence"

    __table_args__ = (
        UniqueConstraint(
            "incident_id",
            "kind",
            "sha256",
            name="uq_incident_evidence_incident_kind_sha256",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    ref: Mapped[dict] = mapped_column(JSONType, nullable=False)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    incident: Mapped["Incident"] = relationship("Incident", back_populates="evidence")
