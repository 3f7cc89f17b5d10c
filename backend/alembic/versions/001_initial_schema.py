"""Initial schema: users, ad accounts, campaigns, recommendations, audit log, settings.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    if "users" in insp.get_table_names():
        return  # Already applied (e.g. from create_all)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(50), nullable=True, server_default="sub_account"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "google_ads_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("admin_user_id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("is_primary", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("parent_customer_id", sa.String(64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["admin_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("admin_user_id", "customer_id", name="uq_google_ads_account_per_admin"),
    )
    op.create_index("ix_google_ads_accounts_admin_user_id", "google_ads_accounts", ["admin_user_id"])
    op.create_index("ix_google_ads_accounts_is_active", "google_ads_accounts", ["is_active"])

    op.create_table(
        "campaigns",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("google_ads_account_id", sa.Uuid(), nullable=True),
        sa.Column("google_ads_campaign_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        sa.Column("daily_budget", sa.Numeric(10, 2), nullable=False),
        sa.Column("target_cpa", sa.Numeric(10, 2), nullable=True),
        sa.Column("target_roas", sa.Numeric(8, 2), nullable=True),
        sa.Column("goal_description", sa.Text(), nullable=True),
        sa.Column("spend_7d", sa.Numeric(10, 2), nullable=True, server_default="0"),
        sa.Column("conversions_7d", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("impressions_7d", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("clicks_7d", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("ctr_7d", sa.Numeric(8, 4), nullable=True, server_default="0"),
        sa.Column("conversion_value_7d", sa.Numeric(12, 2), nullable=True, server_default="0"),
        sa.Column("avg_cpc_7d", sa.Numeric(10, 2), nullable=True, server_default="0"),
        sa.Column("conversion_rate_7d", sa.Numeric(8, 4), nullable=True, server_default="0"),
        sa.Column("actual_cpa", sa.Numeric(10, 2), nullable=True),
        sa.Column("actual_roas", sa.Numeric(8, 2), nullable=True),
        sa.Column("last_modified", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("burn_in_until", sa.DateTime(), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["google_ads_account_id"], ["google_ads_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("google_ads_account_id", "google_ads_campaign_id", name="uq_campaign_per_account"),
    )
    op.create_index("ix_campaigns_user_id", "campaigns", ["user_id"])
    op.create_index("ix_campaigns_google_ads_account_id", "campaigns", ["google_ads_account_id"])
    op.create_index("ix_campaigns_status", "campaigns", ["status"])

    op.create_table(
        "campaign_performance_daily",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("campaign_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("spend", sa.Numeric(10, 2), nullable=True, server_default="0"),
        sa.Column("conversions", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=True, server_default="0"),
        sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("synced_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "date", name="uq_campaign_perf_daily"),
    )
    op.create_index("ix_cpd_campaign_date", "campaign_performance_daily", ["campaign_id", "date"])

    op.create_table(
        "recommendations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("campaign_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=False),
        sa.Column("ai_model", sa.String(128), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("potential_savings", sa.Numeric(10, 2), nullable=True),
        sa.Column("action_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recommendations_campaign_id", "recommendations", ["campaign_id"])
    op.create_index("ix_recommendations_user_id", "recommendations", ["user_id"])
    op.create_index("ix_recommendations_status", "recommendations", ["status"])
    op.create_index("ix_recommendations_created_at", "recommendations", ["created_at"])
    op.create_index(
        "uq_recommendations_one_pending",
        "recommendations",
        ["campaign_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("campaign_id", sa.Uuid(), nullable=True),
        sa.Column("recommendation_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("change_detail", sa.JSON(), nullable=True),
        sa.Column("performed_by", sa.String(10), nullable=False),
        sa.Column("ai_model", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recommendation_id"], ["recommendations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_campaign_id", "audit_logs", ["campaign_id"])
    op.create_index("ix_audit_logs_recommendation_id", "audit_logs", ["recommendation_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    op.create_table(
        "user_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("ai_frequency", sa.String(20), nullable=True, server_default="daily"),
        sa.Column("confidence_threshold", sa.Integer(), nullable=True, server_default="70"),
        sa.Column("email_alerts", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("daily_summaries", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("budget_alerts", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("selected_google_ads_accounts", sa.JSON(), nullable=True),
        sa.Column("current_view_accounts", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "app_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("default_llm_id", sa.String(128), nullable=True),
        sa.Column("enabled_llms", sa.JSON(), nullable=True),
        sa.Column("openai_api_key", sa.Text(), nullable=True),
        sa.Column("anthropic_api_key", sa.Text(), nullable=True),
        sa.Column("perplexity_api_key", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    for table in (
        "app_settings", "user_settings", "audit_logs", "recommendations",
        "campaign_performance_daily", "campaigns", "google_ads_accounts", "users",
    ):
        op.drop_table(table)
