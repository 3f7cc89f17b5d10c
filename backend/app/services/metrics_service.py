"""
Metrics Aggregator: Summary metrics over campaigns already filtered to scope.

Currency is summed as Decimal at full precision; rounding to 2 dp
(currency) and 4 dp (rates) happens only in present_summary().
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    Campaign, CampaignPerformanceDaily, CampaignStatus, Recommendation,
    RecommendationStatus, RecommendationType,
)
from app.services.account_scope import AccountScope
from app.utils import money, ratio, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DATE_PRESETS = ("today", "yesterday", "last_7_days", "last_30_days", "this_month", "last_month")


def get_date_range(preset: str, today: Optional[date] = None) -> Tuple[date, date]:
    """Return a half-open [start, end) range for a named preset."""
    today = today or date.today()
    tomorrow = today + timedelta(days=1)

    if preset == "today":
        return today, tomorrow
    elif preset == "yesterday":
        return today - timedelta(days=1), today
    elif preset == "last_7_days":
        return today - timedelta(days=6), tomorrow
    elif preset == "last_30_days":
        return today - timedelta(days=29), tomorrow
    elif preset == "this_month":
        return today.replace(day=1), tomorrow
    elif preset == "last_month":
        first_this = today.replace(day=1)
        first_prev = (first_this - timedelta(days=1)).replace(day=1)
        return first_prev, first_this
    raise ValueError(f"Unknown date range preset: {preset!r}")


def _div(numerator: Decimal, denominator: Decimal) -> Decimal:
    return numerator / denominator if denominator else ZERO


def compute_summary(
    campaigns: Iterable,
    recommendations: Iterable = (),
    daily_rows: Optional[Iterable] = None,
) -> dict:
    """
    Aggregate campaigns (and optionally their daily rows for a date range).

    Without daily_rows the campaigns' trailing 7-day snapshot is summed.
    Pending recommendations are counted by type. Order-independent.
    """
    campaigns = list(campaigns)

    spend = ZERO
    conversion_value = ZERO
    conversions = 0
    impressions = 0
    clicks = 0

    if daily_rows is None:
        for c in campaigns:
            spend += to_decimal(c.spend_7d)
            conversion_value += to_decimal(c.conversion_value_7d)
            conversions += int(c.conversions_7d or 0)
            impressions += int(c.impressions_7d or 0)
            clicks += int(c.clicks_7d or 0)
    else:
        for row in daily_rows:
            spend += to_decimal(row.spend)
            conversion_value += to_decimal(row.conversion_value)
            conversions += int(row.conversions or 0)
            impressions += int(row.impressions or 0)
            clicks += int(row.clicks or 0)

    pending = {t.value: 0 for t in RecommendationType}
    for r in recommendations:
        if r.status == RecommendationStatus.PENDING.value and r.type in pending:
            pending[r.type] += 1

    conv = Decimal(conversions)
    return {
        "total_spend": spend,
        "total_conversions": conversions,
        "total_conversion_value": conversion_value,
        "total_impressions": impressions,
        "total_clicks": clicks,
        "avg_cpa": _div(spend, conv),
        "roas": _div(conversion_value, spend),
        "ctr": _div(Decimal(clicks), Decimal(impressions)),
        "avg_cpc": _div(spend, Decimal(clicks)),
        "conversion_rate": _div(conv, Decimal(clicks)),
        "total_campaigns": len(campaigns),
        "active_campaigns": sum(1 for c in campaigns if c.status == CampaignStatus.ACTIVE.value),
        "pending_recommendations": pending,
        "total_pending_recommendations": sum(pending.values()),
    }


def present_summary(summary: dict) -> dict:
    """Round for the API: 2 dp currency, 4 dp rates."""
    return {
        "totalSpend": money(summary["total_spend"]),
        "totalConversions": summary["total_conversions"],
        "totalConversionValue": money(summary["total_conversion_value"]),
        "totalImpressions": summary["total_impressions"],
        "totalClicks": summary["total_clicks"],
        "avgCpa": money(summary["avg_cpa"]),
        "roas": ratio(summary["roas"]),
        "ctr": ratio(summary["ctr"]),
        "avgCpc": money(summary["avg_cpc"]),
        "conversionRate": ratio(summary["conversion_rate"]),
        "totalCampaigns": summary["total_campaigns"],
        "activeCampaigns": summary["active_campaigns"],
        "pendingRecommendations": summary["pending_recommendations"],
        "totalPendingRecommendations": summary["total_pending_recommendations"],
    }


async def load_summary(
    db: AsyncSession,
    scope: AccountScope,
    date_range: Optional[Tuple[date, date]] = None,
) -> dict:
    """Fetch campaigns, pending recommendations and (for a range) daily rows in scope."""
    result = await db.execute(select(Campaign).where(scope.campaign_filter()))
    campaigns = list(result.scalars().all())
    campaign_ids = [c.id for c in campaigns]

    recommendations: list = []
    daily_rows = None
    if campaign_ids:
        r = await db.execute(
            select(Recommendation).where(
                Recommendation.campaign_id.in_(campaign_ids),
                Recommendation.status == RecommendationStatus.PENDING.value,
            )
        )
        recommendations = list(r.scalars().all())

    if date_range is not None:
        start, end = date_range
        if campaign_ids:
            r = await db.execute(
                select(CampaignPerformanceDaily).where(
                    CampaignPerformanceDaily.campaign_id.in_(campaign_ids),
                    CampaignPerformanceDaily.date >= start,
                    CampaignPerformanceDaily.date < end,
                )
            )
            daily_rows = list(r.scalars().all())
        else:
            daily_rows = []

    summary = compute_summary(campaigns, recommendations, daily_rows)
    logger.info(
        f"Summary over {len(campaigns)} campaigns (scope={scope.source}, "
        f"range={date_range[0].isoformat() + '..' + date_range[1].isoformat() if date_range else 'snapshot'})"
    )
    return summary
