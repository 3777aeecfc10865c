"""create automation tables

Revision ID: 20261018_01
Revises: 
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "automation_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("enforcement_status", sa.String(length=32), nullable=False, server_default="enforced"),
        sa.Column("trigger_kind", sa.String(length=50), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("action_kind", sa.String(length=50), nullable=False),
        sa.Column("action_config", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("last_triggered", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_automation_rules_owner_id", "automation_rules", ["owner_id"])
    op.create_index("ix_automation_rules_trigger_kind", "automation_rules", ["trigger_kind"])
    op.create_index("ix_automation_rules_owner_created", "automation_rules", ["owner_id", "created_at"])
    op.create_index("ix_automation_rules_active_status", "automation_rules", ["active", "enforcement_status"])

    op.create_table(
        "rule_execution_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=True),
        sa.Column("rule_name", sa.String(length=255), nullable=False),
        sa.Column("trigger_kind", sa.String(length=50), nullable=True),
        sa.Column("action_kind", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("trigger_payload", sa.JSON(), nullable=True),
        sa.Column("action_result", sa.JSON(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_rule_execution_logs_owner_id", "rule_execution_logs", ["owner_id"])
    op.create_index("ix_rule_execution_logs_rule_id", "rule_execution_logs", ["rule_id"])
    op.create_index("ix_rule_execution_logs_owner_created", "rule_execution_logs", ["owner_id", "created_at"])
    op.create_index("ix_rule_execution_logs_rule_created", "rule_execution_logs", ["rule_id", "created_at"])

    op.create_table(
        "owner_plans",
        sa.Column("owner_id", sa.String(length=64), primary_key=True),
        sa.Column("plan_type", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("account_type", sa.String(length=32), nullable=False, server_default="personal"),
        sa.Column("billing_status", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "dashboard_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="info"),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="automation"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_dashboard_notifications_owner_id", "dashboard_notifications", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_dashboard_notifications_owner_id", table_name="dashboard_notifications")
    op.drop_table("dashboard_notifications")
    op.drop_table("owner_plans")
    op.drop_index("ix_rule_execution_logs_rule_created", table_name="rule_execution_logs")
    op.drop_index("ix_rule_execution_logs_owner_created", table_name="rule_execution_logs")
    op.drop_index("ix_rule_execution_logs_rule_id", table_name="rule_execution_logs")
    op.drop_index("ix_rule_execution_logs_owner_id", table_name="rule_execution_logs")
    op.drop_table("rule_execution_logs")
    op.drop_index("ix_automation_rules_active_status", table_name="automation_rules")
    op.drop_index("ix_automation_rules_owner_created", table_name="automation_rules")
    op.drop_index("ix_automation_rules_trigger_kind", table_name="automation_rules")
    op.drop_index("ix_automation_rules_owner_id", table_name="automation_rules")
    op.drop_table("automation_rules")
