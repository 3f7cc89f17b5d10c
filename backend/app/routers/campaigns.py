"""
Campaigns Router: Campaigns in the caller's account scope, goal editing,
and the ingest endpoint used by the external ads sync.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user, require_admin
from app.database import get_db
from app.errors import NotFound
from app.models import Campaign, GoogleAdsAccount, PerformedBy, Recommendation, RecommendationStatus, User
from app.services import audit_service
from app.services.account_scope import resolve_account_scope
from app.services.burn_in import cooldown_remaining, is_eligible
from app.services.recommendation_service import serialize_recommendation
from app.services.sync_service import sync_campaigns
from app.utils import money, optional_money, parse_uuid, ratio, split_ids, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["Campaigns"])


# ── Schemas ────────────────────────────────────────────────────────────

class GoalsUpdate(BaseModel):
    target_cpa: Optional[Decimal] = Field(None, gt=0)
    target_roas: Optional[Decimal] = Field(None, gt=0)
    goal_description: Optional[str] = None


class DailyRow(BaseModel):
    date: date
    spend: Decimal = Decimal("0")
    conversions: int = 0
    conversion_value: Decimal = Decimal("0")
    impressions: int = 0
    clicks: int = 0


class CampaignSnapshot(BaseModel):
    google_ads_campaign_id: str
    name: str
    type: str = "search"
    status: str = "active"
    daily_budget: Decimal = Field(ge=0)
    target_cpa: Optional[Decimal] = None
    target_roas: Optional[Decimal] = None
    spend_7d: Decimal = Decimal("0")
    conversions_7d: int = 0
    conversion_value_7d: Decimal = Decimal("0")
    impressions_7d: int = 0
    clicks_7d: int = 0
    daily: list[DailyRow] = []


class SyncRequest(BaseModel):
    account_id: str
    campaigns: list[CampaignSnapshot]


def _serialize_campaign(c: Campaign, pending: Optional[Recommendation] = None) -> dict:
    now = utcnow()
    return {
        "id": str(c.id),
        "google_ads_account_id": str(c.google_ads_account_id) if c.google_ads_account_id else None,
        "google_ads_campaign_id": c.google_ads_campaign_id,
        "name": c.name,
        "type": c.type,
        "status": c.status,
        "daily_budget": money(c.daily_budget),
        "target_cpa": optional_money(c.target_cpa),
        "target_roas": optional_money(c.target_roas),
        "goal_description": c.goal_description,
        "metrics_7d": {
            "spend": money(c.spend_7d),
            "conversions": c.conversions_7d,
            "conversion_value": money(c.conversion_value_7d),
            "impressions": c.impressions_7d,
            "clicks": c.clicks_7d,
            "ctr": ratio(c.ctr_7d),
            "avg_cpc": money(c.avg_cpc_7d),
            "conversion_rate": ratio(c.conversion_rate_7d),
            "actual_cpa": optional_money(c.actual_cpa),
            "actual_roas": optional_money(c.actual_roas),
        },
        "last_modified": c.last_modified.isoformat() if c.last_modified else None,
        "burn_in_until": c.burn_in_until.isoformat() if c.burn_in_until else None,
        "in_burn_in": not is_eligible(c, now),
        "burn_in_remaining_hours": round(cooldown_remaining(c, now).total_seconds() / 3600, 1),
        "synced_at": c.synced_at.isoformat() if c.synced_at else None,
        "pending_recommendation": serialize_recommendation(pending) if pending else None,
    }


async def _campaign_in_scope(db: AsyncSession, user: User, campaign_id: str) -> Campaign:
    cid = parse_uuid(campaign_id, "campaign_id")
    scope = await resolve_account_scope(db, user)
    campaign = (await db.execute(
        select(Campaign).where(Campaign.id == cid, scope.campaign_filter())
    )).scalar_one_or_none()
    if not campaign:
        raise NotFound("Campaign", campaign_id)
    return campaign


# ── Endpoints ──────────────────────────────────────────────────────────

@router.get("")
async def list_campaigns(
    account_ids: Optional[str] = Query(None, description="Comma-separated account ids"),
    status: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Campaigns in the resolved account scope, each with its pending recommendation."""
    scope = await resolve_account_scope(db, user, split_ids(account_ids))
    q = select(Campaign).where(scope.campaign_filter())
    if status:
        q = q.where(Campaign.status == status)
    campaigns = list((await db.execute(q.order_by(Campaign.name))).scalars().all())

    pending_by_campaign = {}
    if campaigns:
        r = await db.execute(
            select(Recommendation).where(
                Recommendation.campaign_id.in_([c.id for c in campaigns]),
                Recommendation.status == RecommendationStatus.PENDING.value,
            )
        )
        pending_by_campaign = {rec.campaign_id: rec for rec in r.scalars().all()}

    return {
        "campaigns": [_serialize_campaign(c, pending_by_campaign.get(c.id)) for c in campaigns],
        "scope": scope.to_dict(),
    }


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    campaign = await _campaign_in_scope(db, user, campaign_id)
    pending = (await db.execute(
        select(Recommendation).where(
            Recommendation.campaign_id == campaign.id,
            Recommendation.status == RecommendationStatus.PENDING.value,
        )
    )).scalar_one_or_none()
    return _serialize_campaign(campaign, pending)


@router.patch("/{campaign_id}/goals")
async def update_goals(
    campaign_id: str,
    payload: GoalsUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Set target CPA/ROAS and the free-text goal the AI reasons against."""
    campaign = await _campaign_in_scope(db, admin, campaign_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No goal fields supplied")

    before = {k: (str(getattr(campaign, k)) if isinstance(getattr(campaign, k), Decimal) else getattr(campaign, k))
              for k in changes}
    for key, value in changes.items():
        setattr(campaign, key, value)
    await db.flush()

    await audit_service.record(
        db,
        action=audit_service.UPDATE_CAMPAIGN_GOALS,
        details=f"Updated goals for '{campaign.name}'",
        performed_by=PerformedBy.USER.value,
        user_id=admin.id,
        campaign_id=campaign.id,
        change_detail={"before": before, "after": {k: (str(v) if isinstance(v, Decimal) else v) for k, v in changes.items()}},
    )
    return _serialize_campaign(campaign)


@router.put("/sync")
async def sync(
    payload: SyncRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Ingest snapshots from the ads sync for one connected account.
    Metrics are overwritten; burn-in state is left alone.
    """
    aid = parse_uuid(payload.account_id, "account_id")
    account = (await db.execute(
        select(GoogleAdsAccount).where(
            GoogleAdsAccount.id == aid,
            GoogleAdsAccount.admin_user_id == admin.id,
            GoogleAdsAccount.is_active.is_(True),
        )
    )).scalar_one_or_none()
    if not account:
        raise NotFound("Account", payload.account_id)

    stats = await sync_campaigns(db, admin, account, [c.model_dump() for c in payload.campaigns])
    return {"status": "synced", "stats": stats}
