"""
Tests for summary metrics and date range presets.
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.services.metrics_service import compute_summary, get_date_range, load_summary, present_summary
from app.services.account_scope import resolve_account_scope


def _campaign(spend, conversions, value, impressions=1000, clicks=100, status="active"):
    return SimpleNamespace(
        spend_7d=Decimal(spend),
        conversions_7d=conversions,
        conversion_value_7d=Decimal(value),
        impressions_7d=impressions,
        clicks_7d=clicks,
        status=status,
    )


def test_summary_sums_and_ratios():
    summary = compute_summary([
        _campaign("100.10", 2, "300.00"),
        _campaign("200.20", 4, "500.00", status="paused"),
    ])
    assert summary["total_spend"] == Decimal("300.30")
    assert summary["total_conversions"] == 6
    assert summary["avg_cpa"] == Decimal("300.30") / 6
    assert summary["total_campaigns"] == 2
    assert summary["active_campaigns"] == 1

    presented = present_summary(summary)
    assert presented["totalSpend"] == 300.30
    assert presented["avgCpa"] == 50.05
    assert presented["roas"] == 2.6640
    assert presented["ctr"] == 0.1


def test_zero_denominators_yield_zero():
    summary = compute_summary([_campaign("0", 0, "0", impressions=0, clicks=0)])
    presented = present_summary(summary)
    assert presented["avgCpa"] == 0
    assert presented["roas"] == 0
    assert presented["ctr"] == 0
    assert presented["avgCpc"] == 0
    assert presented["conversionRate"] == 0


def test_empty_scope():
    presented = present_summary(compute_summary([]))
    assert presented["totalSpend"] == 0
    assert presented["totalCampaigns"] == 0


def test_summary_is_order_independent():
    campaigns = [_campaign("0.10", 1, "0.20"), _campaign("0.20", 2, "0.10"), _campaign("33.33", 3, "99.99")]
    forward = present_summary(compute_summary(campaigns))
    backward = present_summary(compute_summary(list(reversed(campaigns))))
    assert forward == backward


def test_pending_recommendations_counted_by_type():
    recs = [
        SimpleNamespace(status="pending", type="actionable"),
        SimpleNamespace(status="pending", type="monitor"),
        SimpleNamespace(status="pending", type="actionable"),
        SimpleNamespace(status="applied", type="actionable"),
    ]
    summary = compute_summary([], recs)
    assert summary["pending_recommendations"] == {"actionable": 2, "monitor": 1, "clarification": 0}
    assert summary["total_pending_recommendations"] == 3


@pytest.mark.parametrize("preset,expected", [
    ("today", (date(2024, 3, 15), date(2024, 3, 16))),
    ("yesterday", (date(2024, 3, 14), date(2024, 3, 15))),
    ("last_7_days", (date(2024, 3, 9), date(2024, 3, 16))),
    ("this_month", (date(2024, 3, 1), date(2024, 3, 16))),
    ("last_month", (date(2024, 2, 1), date(2024, 3, 1))),
])
def test_date_presets_are_half_open(preset, expected):
    assert get_date_range(preset, today=date(2024, 3, 15)) == expected


def test_unknown_preset_rejected():
    with pytest.raises(ValueError):
        get_date_range("last_decade")


@pytest.mark.anyio
async def test_load_summary_uses_daily_rows_for_a_range(db, factory):
    from app.models import CampaignPerformanceDaily

    admin = await factory.admin()
    account = await factory.account(admin)
    campaign = await factory.campaign(admin, account)
    for day, spend in ((date(2024, 3, 1), "10.00"), (date(2024, 3, 2), "20.00"), (date(2024, 3, 3), "40.00")):
        db.add(CampaignPerformanceDaily(campaign_id=campaign.id, date=day, spend=Decimal(spend), conversions=1))
    await db.flush()

    scope = await resolve_account_scope(db, admin)
    summary = await load_summary(db, scope, (date(2024, 3, 1), date(2024, 3, 3)))
    assert summary["total_spend"] == Decimal("30.00")
    assert summary["total_conversions"] == 2


def test_spend_without_conversions():
    presented = present_summary(compute_summary([_campaign("1000", 0, "0")]))
    assert presented["totalSpend"] == 1000.0
    assert presented["avgCpa"] == 0
