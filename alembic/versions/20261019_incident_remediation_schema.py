"""Incident, remediation and stop decision schema.

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

incidents with evidence/links/events, remediation runs/steps/audit events,
and stop_decision_audit. JSONB columns on PostgreSQL.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "20261019_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "incidents",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("incident_key", sa.String(length=512), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("classification", postgresql.JSONB(), nullable=True),
        sa.Column("lawbook_version", sa.String(length=128), nullable=True),
        sa.Column("source_primary", postgresql.JSONB(), nullable=False),
        sa.Column("tags", postgresql.JSONB(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint("severity IN ('YELLOW', 'RED')", name="ck_incidents_severity"),
        sa.CheckConstraint(
            "status IN ('OPEN', 'ACKED', 'MITIGATED', 'CLOSED')",
            name="ck_incidents_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("incident_key", name="uq_incidents_incident_key"),
    )
    op.create_index("ix_incidents_last_seen_at", "incidents", ["last_seen_at"], unique=False)

    op.create_table(
        "incident_evidence",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("incident_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("ref", postgresql.JSONB(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "incident_id",
            "kind",
            "sha256",
            name="uq_incident_evidence_incident_kind_sha256",
        ),
    )
    op.create_index(
        "ix_incident_evidence_incident_id", "incident_evidence", ["incident_id"], unique=False
    )

    op.create_table(
        "incident_links",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("incident_id", sa.Integer(), nullable=False),
        sa.Column("timeline_node_id", sa.String(length=255), nullable=False),
        sa.Column("link_type", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "incident_id",
            "timeline_node_id",
            "link_type",
            name="uq_incident_links_incident_node_type",
        ),
    )
    op.create_index(
        "ix_incident_links_incident_id", "incident_links", ["incident_id"], unique=False
    )

    # incident_events: append-only lifecycle log
    op.create_table(
        "incident_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("incident_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_incident_events_incident_created",
        "incident_events",
        ["incident_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "remediation_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_key", sa.String(length=256), nullable=False),
        sa.Column("incident_id", sa.Integer(), nullable=False),
        sa.Column("playbook_id", sa.String(length=128), nullable=False),
        sa.Column("playbook_version", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("lawbook_version", sa.String(length=128), nullable=True),
        sa.Column("inputs_hash", sa.String(length=64), nullable=False),
        sa.Column("planned_json", postgresql.JSONB(), nullable=True),
        sa.Column("result_json", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "status IN ('PLANNED', 'RUNNING', 'SUCCEEDED', 'FAILED', 'SKIPPED')",
            name="ck_remediation_runs_status",
        ),
        sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_key", name="uq_remediation_runs_run_key"),
    )
    op.create_index(
        "ix_remediation_runs_incident_playbook",
        "remediation_runs",
        ["incident_id", "playbook_id"],
        unique=False,
    )

    op.create_table(
        "remediation_steps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.String(length=128), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("idempotency_key", sa.String(length=512), nullable=False),
        sa.Column("input_json", postgresql.JSONB(), nullable=True),
        sa.Column("output_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_json", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["remediation_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "step_id", name="uq_remediation_steps_run_step"),
    )
    op.create_index(
        "ix_remediation_steps_idempotency_key",
        "remediation_steps",
        ["idempotency_key"],
        unique=False,
    )

    # remediation_audit_events: append-only
    op.create_table(
        "remediation_audit_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("incident_id", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("lawbook_version", sa.String(length=128), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["run_id"], ["remediation_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_remediation_audit_events_run_id",
        "remediation_audit_events",
        ["run_id"],
        unique=False,
    )

    op.create_table(
        "stop_decision_audit",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("resource_owner", sa.String(length=255), nullable=False),
        sa.Column("resource_repo", sa.String(length=255), nullable=False),
        sa.Column("pr_number", sa.Integer(), nullable=False),
        sa.Column("workflow_run_id", sa.BigInteger(), nullable=True),
        sa.Column("request_id", sa.String(length=128), nullable=False),
        sa.Column("decision", sa.String(length=16), nullable=False),
        sa.Column("reason_code", sa.String(length=32), nullable=True),
        sa.Column("reasons", postgresql.JSONB(), nullable=False),
        sa.Column("recommended_next_step", sa.String(length=32), nullable=False),
        sa.Column("failure_class", sa.String(length=255), nullable=True),
        sa.Column("current_job_attempts", sa.Integer(), nullable=False),
        sa.Column("total_pr_attempts", sa.Integer(), nullable=False),
        sa.Column("lawbook_hash", sa.String(length=64), nullable=True),
        sa.Column("lawbook_version", sa.String(length=128), nullable=True),
        sa.Column("applied_rules", postgresql.JSONB(), nullable=False),
        sa.Column("evidence", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_stop_decision_audit_target",
        "stop_decision_audit",
        ["resource_owner", "resource_repo", "pr_number"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_stop_decision_audit_target", table_name="stop_decision_audit")
    op.drop_table("stop_decision_audit")
    op.drop_index(
        "ix_remediation_audit_events_run_id", table_name="remediation_audit_events"
    )
    op.drop_table("remediation_audit_events")
    op.drop_index("ix_remediation_steps_idempotency_key", table_name="remediation_steps")
    op.drop_table("remediation_steps")
    op.drop_index("ix_remediation_runs_incident_playbook", table_name="remediation_runs")
    op.drop_table("remediation_runs")
    op.drop_index("ix_incident_events_incident_created", table_name="incident_events")
    op.drop_table("incident_events")
    op.drop_index("ix_incident_links_incident_id", table_name="incident_links")
    op.drop_table("incident_links")
    op.drop_index("ix_incident_evidence_incident_id", table_name="incident_evidence")
    op.drop_table("incident_evidence")
    op.drop_index("ix_incidents_last_seen_at", table_name="incidents")
    op.drop_table("incidents")
