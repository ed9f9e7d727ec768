"""RemediationStep model: ordered child of a RemediationRun."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.db.upsert import JSONType


class RemediationStep(Base):
    """Per-step record with its own idempotency key and structured result."""

    __tablename__ = "remediation_steps"

    __table_args__ = (
        UniqueConstraint("run_id", "step_id", name="uq_remediation_steps_run_step"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("remediation_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    input_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    output_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped["RemediationRun"] = relationship("RemediationRun", back_populates="steps")
