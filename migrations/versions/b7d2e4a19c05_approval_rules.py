"""Approval routing rules.

Revision ID: b7d2e4a19c05
Revises: 6a1f0c3e9b21
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa

revision = "b7d2e4a19c05"
down_revision = "6a1f0c3e9b21"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "approval_rules",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(150), unique=True, nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("priority", sa.Integer, nullable=False, server_default="100"),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("item_types", sa.JSON, nullable=True),
        sa.Column("conditions", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(150), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("approval_rules")
