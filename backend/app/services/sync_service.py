"""
Sync Service: write campaign snapshots and daily rows pushed by the ads sync.

Snapshots are overwritten wholesale; derived ratios (CPA, ROAS, CTR, CPC,
conversion rate) are recomputed from the raw counts. burn_in_until and the
campaign goals set in this app are never touched here.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Campaign, CampaignPerformanceDaily, CampaignStatus, GoogleAdsAccount, User
from app.services import audit_service
from app.utils import CENTS, RATIO_PLACES, to_decimal, utcnow

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "enabled": CampaignStatus.ACTIVE.value,
    "active": CampaignStatus.ACTIVE.value,
    "paused": CampaignStatus.PAUSED.value,
    "removed": CampaignStatus.REMOVED.value,
}


def _normalize_status(value: Optional[str]) -> str:
    return _STATUS_MAP.get((value or "").strip().lower(), CampaignStatus.ACTIVE.value)


def derive_snapshot(data: dict) -> dict:
    """Raw 7-day counts -> the Campaign snapshot columns, ratios included."""
    spend = to_decimal(data.get("spend_7d"))
    value = to_decimal(data.get("conversion_value_7d"))
    conversions = int(data.get("conversions_7d") or 0)
    impressions = int(data.get("impressions_7d") or 0)
    clicks = int(data.get("clicks_7d") or 0)
    return {
        "spend_7d": spend.quantize(CENTS),
        "conversion_value_7d": value.quantize(CENTS),
        "conversions_7d": conversions,
        "impressions_7d": impressions,
        "clicks_7d": clicks,
        "ctr_7d": (Decimal(clicks) / impressions).quantize(RATIO_PLACES) if impressions else Decimal("0"),
        "avg_cpc_7d": (spend / clicks).quantize(CENTS) if clicks else Decimal("0"),
        "conversion_rate_7d": (Decimal(conversions) / clicks).quantize(RATIO_PLACES) if clicks else Decimal("0"),
        "actual_cpa": (spend / conversions).quantize(CENTS) if conversions else None,
        "actual_roas": (value / spend).quantize(CENTS) if spend else None,
    }


async def _upsert_daily(db: AsyncSession, campaign_id: uuid.UUID, rows: list[dict]) -> int:
    stored = 0
    for row in rows:
        day = row["date"] if isinstance(row["date"], date) else date.fromisoformat(str(row["date"]))
        existing = (await db.execute(
            select(CampaignPerformanceDaily).where(and_(
                CampaignPerformanceDaily.campaign_id == campaign_id,
                CampaignPerformanceDaily.date == day,
            ))
        )).scalar_one_or_none()
        if existing is None:
            existing = CampaignPerformanceDaily(campaign_id=campaign_id, date=day)
            db.add(existing)
        existing.spend = to_decimal(row.get("spend")).quantize(CENTS)
        existing.conversions = int(row.get("conversions") or 0)
        existing.conversion_value = to_decimal(row.get("conversion_value")).quantize(CENTS)
        existing.impressions = int(row.get("impressions") or 0)
        existing.clicks = int(row.get("clicks") or 0)
        existing.synced_at = utcnow()
        stored += 1
    return stored


async def sync_campaigns(
    db: AsyncSession,
    admin: User,
    account: GoogleAdsAccount,
    campaigns: list[dict],
) -> dict:
    """
    Upsert campaigns for one account keyed by google_ads_campaign_id.
    Each dict carries identity, budget, optional targets, 7-day counts and
    an optional "daily" list of per-date rows.
    """
    created = updated = daily = 0
    now = utcnow()

    for data in campaigns:
        external_id = str(data["google_ads_campaign_id"])
        campaign = (await db.execute(
            select(Campaign).where(
                Campaign.google_ads_account_id == account.id,
                Campaign.google_ads_campaign_id == external_id,
            )
        )).scalar_one_or_none()

        if campaign is None:
            campaign = Campaign(
                user_id=admin.id,
                google_ads_account_id=account.id,
                google_ads_campaign_id=external_id,
                last_modified=now,
            )
            db.add(campaign)
            created += 1
        else:
            updated += 1

        campaign.name = data.get("name") or campaign.name or external_id
        campaign.type = data.get("type") or campaign.type or "search"
        campaign.status = _normalize_status(data.get("status"))
        campaign.daily_budget = to_decimal(data.get("daily_budget", campaign.daily_budget)).quantize(CENTS)
        if data.get("target_cpa") is not None:
            campaign.target_cpa = to_decimal(data["target_cpa"])
        if data.get("target_roas") is not None:
            campaign.target_roas = to_decimal(data["target_roas"])
        for column, value in derive_snapshot(data).items():
            setattr(campaign, column, value)
        campaign.synced_at = now

        await db.flush()
        if data.get("daily"):
            daily += await _upsert_daily(db, campaign.id, data["daily"])

    await db.flush()
    stats = {"created": created, "updated": updated, "daily_rows": daily}
    await audit_service.record(
        db,
        action=audit_service.CAMPAIGN_SYNC,
        details=f"Synced {created + updated} campaigns for account {account.customer_name}",
        user_id=admin.id,
        change_detail={"account_id": str(account.id), **stats},
    )
    logger.info(f"Synced account {account.customer_id}: {stats}")
    return stats
