"""GRC core tables: audit prioritization, approval workflow, scheduling.

Revision ID: 6a1f0c3e9b21
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa

revision = "6a1f0c3e9b21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── Audit Plans ──
    op.create_table(
        "audit_plans",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("code", sa.String(50), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("status", sa.String(20), server_default="draft"),
        sa.Column("created_by", sa.String(150), server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── Audit Universe ──
    op.create_table(
        "audit_universe",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("auditable_entity", sa.String(200), nullable=False),
        sa.Column("entity_type", sa.String(20), server_default="process"),
        sa.Column("process_name", sa.String(200), server_default=""),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("mandatory_audit", sa.Boolean, server_default=sa.false()),
        sa.Column("audit_frequency", sa.Integer, server_default="3"),
        sa.Column("last_audit_date", sa.Date, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── Prioritization Factors ──
    op.create_table(
        "audit_prioritization_factors",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("plan_id", sa.Integer,
                  sa.ForeignKey("audit_plans.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("universe_id", sa.Integer,
                  sa.ForeignKey("audit_universe.id", ondelete="CASCADE"), nullable=False),
        sa.Column("risk_score", sa.Integer, server_default="0"),
        sa.Column("previous_audit_result", sa.String(20), server_default="none"),
        sa.Column("strategic_priority", sa.Integer, server_default="1"),
        sa.Column("fraud_history", sa.Boolean, server_default=sa.false()),
        sa.Column("regulatory_requirement", sa.Boolean, server_default=sa.false()),
        sa.Column("management_request", sa.Boolean, server_default=sa.false()),
        sa.Column("times_since_last_audit", sa.Integer, server_default="0"),
        sa.Column("estimated_audit_hours", sa.Integer, server_default="40"),
        sa.Column("risk_justification", sa.Text, nullable=True),
        sa.Column("strategic_justification", sa.Text, nullable=True),
        sa.Column("total_priority_score", sa.Integer, server_default="0"),
        sa.Column("priority_level", sa.String(20), server_default="low"),
        sa.Column("calculated_ranking", sa.Integer, nullable=True),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("calculated_by", sa.String(150), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("plan_id", "universe_id", name="uq_factor_plan_universe"),
    )

    # ── Approval Items ──
    op.create_table(
        "approval_items",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("approval_item_type", sa.String(40), nullable=False),
        sa.Column("approval_item_id", sa.String(64), nullable=False),
        sa.Column("risk_level", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("approval_status", sa.String(20), nullable=False,
                  server_default="pending", index=True),
        sa.Column("decision_method", sa.String(20), nullable=True),
        sa.Column("title", sa.String(300), server_default=""),
        sa.Column("submitted_by", sa.String(150), nullable=False, server_default="system"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("approver_id", sa.String(150), nullable=True),
        sa.Column("reasoning", sa.Text, nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── Escalations ──
    op.create_table(
        "approval_escalations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("approval_item_id", sa.Integer,
                  sa.ForeignKey("approval_items.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("escalation_level", sa.String(20), nullable=False),
        sa.Column("next_escalation_level", sa.String(20), nullable=True),
        sa.Column("urgency", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("timeout_hours", sa.Integer, nullable=False, server_default="72"),
        sa.Column("escalation_reason", sa.Text, nullable=False),
        sa.Column("escalated_by", sa.String(150), nullable=False),
        sa.Column("is_automatic", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(150), nullable=True),
        sa.Column("resolution", sa.String(20), nullable=True),
    )

    # ── Approval Audit Trail ──
    op.create_table(
        "approval_audit_trail",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("approval_item_id", sa.Integer,
                  sa.ForeignKey("approval_items.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("performed_by", sa.String(150), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("reasoning", sa.Text, nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )

    # ── Notifications ──
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("recipient", sa.String(150), nullable=False, server_default="all", index=True),
        sa.Column("kind", sa.String(30), nullable=False, server_default="system"),
        sa.Column("severity", sa.String(20), nullable=False, server_default="info"),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("body", sa.Text, server_default=""),
        sa.Column("subject_type", sa.String(30), nullable=True),
        sa.Column("subject_id", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_recipient_unread", "notifications", ["recipient", "read_at"])

    # ── Scheduled Jobs ──
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("job_name", sa.String(100), unique=True, nullable=False),
        sa.Column("description", sa.String(500), server_default=""),
        sa.Column("interval_minutes", sa.Integer, nullable=False),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(20), nullable=True),
        sa.Column("last_duration_ms", sa.Integer, nullable=True),
        sa.Column("last_result", sa.JSON, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("run_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("scheduled_jobs")
    op.drop_index("ix_notifications_recipient_unread", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("approval_audit_trail")
    op.drop_table("approval_escalations")
    op.drop_table("approval_items")
    op.drop_table("audit_prioritization_factors")
    op.drop_table("audit_universe")
    op.drop_table("audit_plans")
