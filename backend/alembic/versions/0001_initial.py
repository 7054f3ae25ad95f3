"""initial

Revision ID: 0001
Revises: 
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

traffic_category = sa.Enum("STATIC", "API", name="trafficcategory")
sync_status = sa.Enum("PENDING", "SUCCESS", "NOT_FOUND", "CANNOT_SYNC", "FAILED", name="syncstatus")


def upgrade() -> None:
    op.create_table(
        "call_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("call_time", sa.DateTime(), nullable=False),
        sa.Column("call_minute", sa.DateTime(), nullable=False),
        sa.Column("caller_id", sa.String(length=64), nullable=False),
        sa.Column("campaign_phone", sa.String(length=64), nullable=False),
        sa.Column("payout", sa.Float()),
        sa.Column("revenue", sa.Float()),
        sa.Column("category", traffic_category, nullable=False),
        sa.Column("adjustment_time", sa.DateTime()),
        sa.Column("adjustment_amount", sa.Float()),
        sa.Column("adjustment_classification", sa.String(length=64)),
        sa.Column("adjustment_duration", sa.Integer()),
        sa.Column("unmatched", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("platform_call_id", sa.String(length=128)),
        sa.Column("sync_status", sync_status, nullable=False),
        sa.Column("sync_at", sa.DateTime()),
        sa.Column("sync_response", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("caller_id", "call_minute", "campaign_phone", name="uq_call_records_identity"),
    )
    op.create_index("ix_call_records_call_time", "call_records", ["call_time"])
    op.create_index("ix_call_records_caller_id", "call_records", ["caller_id"])
    op.create_index("ix_call_records_category", "call_records", ["category"])
    op.create_index("ix_call_records_platform_call_id", "call_records", ["platform_call_id"])
    op.create_index("ix_call_records_sync_status", "call_records", ["sync_status"])

    op.create_table(
        "adjustment_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("call_sid", sa.String(length=128), nullable=False),
        sa.Column("call_time", sa.DateTime(), nullable=False),
        sa.Column("adjustment_time", sa.DateTime(), nullable=False),
        sa.Column("caller_id", sa.String(length=64), nullable=False),
        sa.Column("campaign_phone", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("classification", sa.String(length=64)),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("call_sid", name="uq_adjustment_records_call_sid"),
    )
    op.create_index("ix_adjustment_records_call_time", "adjustment_records", ["call_time"])
    op.create_index("ix_adjustment_records_caller_id", "adjustment_records", ["caller_id"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("call_record_id", sa.Integer(), sa.ForeignKey("call_records.id"), nullable=False),
        sa.Column("caller_id", sa.String(length=64)),
        sa.Column("call_time", sa.DateTime()),
        sa.Column("category", traffic_category),
        sa.Column("adjustment_amount", sa.Float()),
        sa.Column("adjustment_classification", sa.String(length=64)),
        sa.Column("platform_call_id", sa.String(length=128)),
        sa.Column("status", sync_status, nullable=False),
        sa.Column("event", sa.String(length=32), nullable=False),
        sa.Column("revenue", sa.Float()),
        sa.Column("payout", sa.Float()),
        sa.Column("lookup_result", sa.JSON()),
        sa.Column("leg_resolution", sa.JSON()),
        sa.Column("api_request", sa.JSON()),
        sa.Column("api_response", sa.JSON()),
        sa.Column("error_code", sa.String(length=32)),
        sa.Column("error_message", sa.Text()),
        sa.Column("attempted_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
    )
    op.create_index("ix_sync_logs_call_record_id", "sync_logs", ["call_record_id"])
    op.create_index("ix_sync_logs_caller_id", "sync_logs", ["caller_id"])
    op.create_index("ix_sync_logs_platform_call_id", "sync_logs", ["platform_call_id"])
    op.create_index("ix_sync_logs_status", "sync_logs", ["status"])
    op.create_index("ix_sync_logs_attempted_at", "sync_logs", ["attempted_at"])


def downgrade() -> None:
    op.drop_table("sync_logs")
    op.drop_table("adjustment_records")
    op.drop_table("call_records")
    sync_status.drop(op.get_bind(), checkfirst=True)
    traffic_category.drop(op.get_bind(), checkfirst=True)
