"""sales activities, deals and reconciliation bookkeeping tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "sales_activities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("activity_date", sa.Date(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False, server_default="sale"),
        sa.Column("deal_id", sa.Integer(), nullable=True),
        sa.Column("record_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("merged_into_id", sa.Integer(), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["merged_into_id"], ["sales_activities.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_activities_owner_id", "sales_activities", ["owner_id"], unique=False)
    op.create_index("ix_sales_activities_activity_date", "sales_activities", ["activity_date"], unique=False)
    op.create_index("ix_sales_activities_deal_id", "sales_activities", ["deal_id"], unique=False)
    op.create_index("ix_sales_activities_record_status", "sales_activities", ["record_status"], unique=False)
    op.create_index("ix_sales_activities_merged_into_id", "sales_activities", ["merged_into_id"], unique=False)
    op.create_index(
        "ix_sales_activities_owner_status_date",
        "sales_activities",
        ["owner_id", "record_status", "activity_date"],
        unique=False,
    )

    op.create_table(
        "deals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("company", sa.String(length=255), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="won"),
        sa.Column("stage_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("activity_id", sa.Integer(), nullable=True),
        sa.Column("record_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("merged_into_id", sa.Integer(), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["activity_id"], ["sales_activities.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["merged_into_id"], ["deals.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_deals_owner_id", "deals", ["owner_id"], unique=False)
    op.create_index("ix_deals_status", "deals", ["status"], unique=False)
    op.create_index("ix_deals_stage_changed_at", "deals", ["stage_changed_at"], unique=False)
    op.create_index("ix_deals_activity_id", "deals", ["activity_id"], unique=False)
    op.create_index("ix_deals_record_status", "deals", ["record_status"], unique=False)
    op.create_index("ix_deals_merged_into_id", "deals", ["merged_into_id"], unique=False)

    op.create_foreign_key(
        "fk_sales_activities_deal_id",
        "sales_activities",
        "deals",
        ["deal_id"],
        ["id"],
        ondelete="SET NULL",
    )

    op.create_table(
        "reconciliation_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("source_table", sa.String(length=64), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=True),
        sa.Column("target_table", sa.String(length=64), nullable=True),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reconciliation_audit_log_owner_id", "reconciliation_audit_log", ["owner_id"], unique=False)
    op.create_index(
        "ix_reconciliation_audit_log_action_type",
        "reconciliation_audit_log",
        ["action_type"],
        unique=False,
    )
    op.create_index("ix_reconciliation_audit_log_run_id", "reconciliation_audit_log", ["run_id"], unique=False)
    op.create_index(
        "ix_reconciliation_audit_log_owner_created",
        "reconciliation_audit_log",
        ["owner_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column("max_batches", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("batches_executed", sa.Integer(), nullable=False),
        sa.Column("total_processed", sa.Integer(), nullable=False),
        sa.Column("linked", sa.Integer(), nullable=False),
        sa.Column("deals_created", sa.Integer(), nullable=False),
        sa.Column("activities_created", sa.Integer(), nullable=False),
        sa.Column("merged", sa.Integer(), nullable=False),
        sa.Column("errors", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reconciliation_runs_owner_id", "reconciliation_runs", ["owner_id"], unique=False)

    op.create_table(
        "reconciliation_locks",
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )


def downgrade() -> None:
    op.drop_table("reconciliation_locks")
    op.drop_index("ix_reconciliation_runs_owner_id", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")
    op.drop_index("ix_reconciliation_audit_log_owner_created", table_name="reconciliation_audit_log")
    op.drop_index("ix_reconciliation_audit_log_run_id", table_name="reconciliation_audit_log")
    op.drop_index("ix_reconciliation_audit_log_action_type", table_name="reconciliation_audit_log")
    op.drop_index("ix_reconciliation_audit_log_owner_id", table_name="reconciliation_audit_log")
    op.drop_table("reconciliation_audit_log")
    op.drop_constraint("fk_sales_activities_deal_id", "sales_activities", type_="foreignkey")
    op.drop_index("ix_deals_merged_into_id", table_name="deals")
    op.drop_index("ix_deals_record_status", table_name="deals")
    op.drop_index("ix_deals_activity_id", table_name="deals")
    op.drop_index("ix_deals_stage_changed_at", table_name="deals")
    op.drop_index("ix_deals_status", table_name="deals")
    op.drop_index("ix_deals_owner_id", table_name="deals")
    op.drop_table("deals")
    op.drop_index("ix_sales_activities_owner_status_date", table_name="sales_activities")
    op.drop_index("ix_sales_activities_merged_into_id", table_name="sales_activities")
    op.drop_index("ix_sales_activities_record_status", table_name="sales_activities")
    op.drop_index("ix_sales_activities_deal_id", table_name="sales_activities")
    op.drop_index("ix_sales_activities_activity_date", table_name="sales_activities")
    op.drop_index("ix_sales_activities_owner_id", table_name="sales_activities")
    op.drop_table("sales_activities")
