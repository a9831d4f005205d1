"""create ai_usage and analysis_jobs

Revision ID: 3a1f7c2d9b10
Revises:
Create Date: 2025-09-14 11:02:37.418220

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a1f7c2d9b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the usage ledger and analysis job tables."""

    op.create_table(
        "ai_usage",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("analysis_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "monthly_analysis_count", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column("last_analysis_date", sa.DateTime(timezone=True)),
        sa.Column("current_month_year", sa.String(length=7), nullable=False),
        sa.Column(
            "total_cost", sa.Numeric(12, 4), nullable=False, server_default="0"
        ),
        sa.Column(
            "tier",
            sa.Enum("free", "basic", "premium", name="subscription_tier"),
            nullable=False,
            server_default="free",
        ),
        sa.Column("subscription_start", sa.DateTime(timezone=True)),
        sa.Column("subscription_end", sa.DateTime(timezone=True)),
        sa.Column("analysis_limit", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("analysis_count >= 0", name="ck_ai_usage_analysis_count"),
        sa.CheckConstraint(
            "monthly_analysis_count >= 0", name="ck_ai_usage_monthly_count"
        ),
        sa.CheckConstraint("total_cost >= 0", name="ck_ai_usage_total_cost"),
    )

    op.create_table(
        "analysis_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("image_key", sa.String, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "uploaded", "processing", "completed", "failed", name="job_status"
            ),
            nullable=False,
            server_default="uploaded",
        ),
        sa.Column("symbols", sa.JSON, nullable=False),
        sa.Column("total_symbols", sa.Integer, nullable=False, server_default="0"),
        sa.Column("average_accuracy", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_analyzed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("confidence", sa.Float, nullable=False, server_default="0"),
        sa.Column("summary", sa.Text),
        sa.Column("analysis_date", sa.DateTime(timezone=True)),
        sa.Column("processing_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_analysis_jobs_user_id", "analysis_jobs", ["user_id"], unique=False
    )


def downgrade() -> None:
    """Drop the usage ledger and analysis job tables."""

    op.drop_index("ix_analysis_jobs_user_id", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")
    op.drop_table("ai_usage")
    sa.Enum(name="job_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscription_tier").drop(op.get_bind(), checkfirst=True)
