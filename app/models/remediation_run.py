"""RemediationRun model."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.upsert import JSONType

RUN_STATUSES = ("PLANNED", "RUNNING", "SUCCEEDED", "FAILED", "SKIPPED")


class RemediationRun(Base):
    """One attempt to execute a playbook against an incident.

    run_key is the idempotency boundary: at most one non-skipped run exists per key.
    A SKIPPED run may be re-claimed once its gates pass.
    """

    __tablename__ = "remediation_runs"

    __table_args__ = (
        Index("ix_remediation_runs_incident_playbook", "incident_id", "playbook_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_key: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    incident_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
    )
    playbook_id: Mapped[str] = mapped_column(String(128), nullable=False)
    playbook_version: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    lawbook_version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    inputs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    planned_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    result_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
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

    steps: Mapped[list["RemediationStep"]] = relationship(
        "RemediationStep",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RemediationStep.id",
        passive_deletes=True,
    )
