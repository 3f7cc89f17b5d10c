"""
Campaign Recommendation Engine: Database Models
Users, connected ad accounts, campaign snapshots, AI recommendations,
the append-only audit trail, and per-user settings.
"""

import uuid
import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    String, Text, Integer, BigInteger, Boolean, DateTime, Date, Numeric,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matching DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class UserRole(str, enum.Enum):
    ADMIN = "admin"
    SUB_ACCOUNT = "sub_account"


class CampaignStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REMOVED = "removed"


class RecommendationType(str, enum.Enum):
    ACTIONABLE = "actionable"
    MONITOR = "monitor"
    CLARIFICATION = "clarification"


class RecommendationPriority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecommendationStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    DISMISSED = "dismissed"


class PerformedBy(str, enum.Enum):
    USER = "user"
    AI = "ai"


class AIFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


# ══════════════════════════════════════════════════════════════════════
#  USERS
# ══════════════════════════════════════════════════════════════════════

class User(Base):
    """App user. Admins own ad accounts; sub-accounts get read/view access."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), default=UserRole.SUB_ACCOUNT.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_login_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    settings: Mapped["UserSettings"] = relationship("UserSettings", back_populates="user", uselist=False)

    __table_args__ = (
        Index("ix_users_email", "email"),
        Index("ix_users_role", "role"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


# ══════════════════════════════════════════════════════════════════════
#  GOOGLE ADS ACCOUNTS: Connected by admins only
# ══════════════════════════════════════════════════════════════════════

class GoogleAdsAccount(Base):
    """An ad-account credential bundle owned by exactly one admin."""
    __tablename__ = "google_ads_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)  # encrypted
    access_token: Mapped[str] = mapped_column(Text, nullable=True)  # encrypted
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)  # MCC manager account
    parent_customer_id: Mapped[str] = mapped_column(String(64), nullable=True)  # MCC child accounts
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    campaigns: Mapped[list["Campaign"]] = relationship("Campaign", back_populates="account", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("admin_user_id", "customer_id", name="uq_google_ads_account_per_admin"),
        Index("ix_google_ads_accounts_admin_user_id", "admin_user_id"),
        Index("ix_google_ads_accounts_is_active", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS: Snapshots written by the external ads sync
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """
    Campaign identity, budget/targets and a trailing 7-day metrics snapshot.
    Metrics are overwritten wholesale on every sync; burn_in_until is only
    ever set by applying a recommendation.
    """
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    google_ads_account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("google_ads_accounts.id", ondelete="CASCADE"), nullable=True)
    google_ads_campaign_id: Mapped[str] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # search, display, shopping, ...
    status: Mapped[str] = mapped_column(String(20), default=CampaignStatus.ACTIVE.value)

    # Budget & goals
    daily_budget: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    target_cpa: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=True)
    target_roas: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=True)
    goal_description: Mapped[str] = mapped_column(Text, nullable=True)

    # Trailing 7-day snapshot
    spend_7d: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    conversions_7d: Mapped[int] = mapped_column(Integer, default=0)
    impressions_7d: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks_7d: Mapped[int] = mapped_column(Integer, default=0)
    ctr_7d: Mapped[Decimal] = mapped_column(Numeric(8, 4), default=Decimal("0"))  # 0.0234 = 2.34%
    conversion_value_7d: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    avg_cpc_7d: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    conversion_rate_7d: Mapped[Decimal] = mapped_column(Numeric(8, 4), default=Decimal("0"))
    actual_cpa: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=True)
    actual_roas: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=True)

    last_modified: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    burn_in_until: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    account: Mapped["GoogleAdsAccount"] = relationship("GoogleAdsAccount", back_populates="campaigns")

    __table_args__ = (
        UniqueConstraint("google_ads_account_id", "google_ads_campaign_id", name="uq_campaign_per_account"),
        Index("ix_campaigns_user_id", "user_id"),
        Index("ix_campaigns_google_ads_account_id", "google_ads_account_id"),
        Index("ix_campaigns_status", "status"),
    )


class CampaignPerformanceDaily(Base):
    """
    One row per campaign per date, written by the ads sync. Serves
    date-range summaries without touching the snapshot columns.
    """
    __tablename__ = "campaign_performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    spend: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    conversion_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_campaign_perf_daily"),
        Index("ix_cpd_campaign_date", "campaign_id", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RECOMMENDATIONS
# ══════════════════════════════════════════════════════════════════════

class Recommendation(Base):
    """
    AI verdict for one campaign. Only the Action Applier moves status out of
    pending; once applied or dismissed the row is frozen apart from applied_at.
    """
    __tablename__ = "recommendations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False)
    ai_model: Mapped[str] = mapped_column(String(128), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RecommendationStatus.PENDING.value)
    potential_savings: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=True)
    action_data: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    applied_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    campaign: Mapped["Campaign"] = relationship("Campaign")

    __table_args__ = (
        Index("ix_recommendations_campaign_id", "campaign_id"),
        Index("ix_recommendations_user_id", "user_id"),
        Index("ix_recommendations_status", "status"),
        Index("ix_recommendations_created_at", "created_at"),
        # At most one pending recommendation per campaign
        Index(
            "uq_recommendations_one_pending",
            "campaign_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


# ══════════════════════════════════════════════════════════════════════
#  AUDIT LOG: Append-only
# ══════════════════════════════════════════════════════════════════════

class AuditLog(Base):
    """Every state-changing event, by a user or by the AI."""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=True)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("recommendations.id", ondelete="CASCADE"), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    change_detail: Mapped[dict] = mapped_column(JSON, nullable=True)  # before/after values
    performed_by: Mapped[str] = mapped_column(String(10), nullable=False)  # user, ai
    ai_model: Mapped[str] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_audit_logs_user_id", "user_id"),
        Index("ix_audit_logs_campaign_id", "campaign_id"),
        Index("ix_audit_logs_recommendation_id", "recommendation_id"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_created_at", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SETTINGS
# ══════════════════════════════════════════════════════════════════════

class UserSettings(Base):
    """
    Per-user preferences plus the two account-selection layers:
    selected_google_ads_accounts is the admin-curated master list,
    current_view_accounts is the dashboard view filter.
    """
    __tablename__ = "user_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)
    ai_frequency: Mapped[str] = mapped_column(String(20), default=AIFrequency.DAILY.value)
    confidence_threshold: Mapped[int] = mapped_column(Integer, default=70)
    email_alerts: Mapped[bool] = mapped_column(Boolean, default=True)
    daily_summaries: Mapped[bool] = mapped_column(Boolean, default=False)
    budget_alerts: Mapped[bool] = mapped_column(Boolean, default=True)
    selected_google_ads_accounts: Mapped[list] = mapped_column(JSON, default=list)
    current_view_accounts: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    user: Mapped["User"] = relationship("User", back_populates="settings")


class AppSettings(Base):
    """Application-wide settings. Single row, key-value style."""
    __tablename__ = "app_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # default_llm_id: "openai:gpt-4o" or "anthropic:claude-sonnet-4-20250514"
    default_llm_id: Mapped[str] = mapped_column(String(128), nullable=True)
    # enabled_llms: [{"provider": "openai", "model": "gpt-4o", "label": "GPT-4o"}]
    enabled_llms: Mapped[list] = mapped_column(JSON, default=list)
    # Encrypted API keys (stored from Settings UI; env vars take precedence if set)
    openai_api_key: Mapped[str] = mapped_column(Text, nullable=True)
    anthropic_api_key: Mapped[str] = mapped_column(Text, nullable=True)
    perplexity_api_key: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
