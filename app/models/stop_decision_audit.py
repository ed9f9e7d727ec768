"""StopDecisionAudit model."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base
from app.db.upsert import JSONType


class StopDecisionAudit(Base):
    """One row per evaluated stop decision, whatever the outcome."""

    __tablename__ = "stop_decision_audit"

    __table_args__ = (
        Index("ix_stop_decision_audit_target", "resource_owner", "resource_repo", "pr_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resource_owner: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_repo: Mapped[str] = mapped_column(String(255), nullable=False)
    pr_number: Mapped[int] = mapped_column(Integer, nullable=False)
    workflow_run_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False)
    decision: Mapped[str] = mapped_column(String(16), nullable=False)
    reason_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reasons: Mapped[list] = mapped_column(JSONType, nullable=False)
    recommended_next_step: Mapped[str] = mapped_column(String(32), nullable=False)
    failure_class: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_job_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    total_pr_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    lawbook_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lawbook_version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    applied_rules: Mapped[list] = mapped_column(JSONType, nullable=False)
    evidence: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
