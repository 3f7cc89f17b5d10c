"""
Action Service: apply or dismiss a pending recommendation.

Both run inside a savepoint: the campaign mutation, the cooldown, the status
change and the audit row land together or not at all.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AccessDenied, InvalidState, NotFound
from app.models import (
    Campaign, CampaignStatus, GoogleAdsAccount, PerformedBy, Recommendation,
    RecommendationStatus, RecommendationType, User,
)
from app.services import audit_service
from app.services.burn_in import begin_cooldown, is_eligible
from app.utils import utcnow

logger = logging.getLogger(__name__)

_NUMERIC_FIELDS = ("daily_budget", "target_cpa", "target_roas")


def _as_json(value):
    if isinstance(value, Decimal):
        return str(value)
    return value


def apply_changes(campaign: Campaign, changes: dict) -> tuple[dict, dict]:
    """
    Mutate the campaign per action_data["changes"]. Returns (before, after)
    for the audit row. Raises InvalidState if nothing applicable remains.
    """
    before: dict = {}
    after: dict = {}
    for field_name in _NUMERIC_FIELDS:
        if field_name not in changes or changes[field_name] is None:
            continue
        try:
            value = Decimal(str(changes[field_name]))
        except InvalidOperation:
            raise InvalidState(f"Invalid {field_name} in recommendation: {changes[field_name]!r}")
        if value <= 0:
            raise InvalidState(f"{field_name} must be positive")
        before[field_name] = _as_json(getattr(campaign, field_name))
        setattr(campaign, field_name, value)
        after[field_name] = str(value)

    status = changes.get("status")
    if status is not None:
        if status not in (CampaignStatus.ACTIVE.value, CampaignStatus.PAUSED.value):
            raise InvalidState(f"Unsupported campaign status change: {status!r}")
        before["status"] = campaign.status
        campaign.status = status
        after["status"] = status

    if not after:
        raise InvalidState("Recommendation has no applicable changes")
    return before, after


async def _load_for_update(db: AsyncSession, recommendation_id) -> tuple[Recommendation, Campaign]:
    # Lock order: Campaign row, then Recommendation row (same as generation)
    campaign_id = (await db.execute(
        select(Recommendation.campaign_id).where(Recommendation.id == recommendation_id)
    )).scalar_one_or_none()
    if campaign_id is None:
        raise NotFound("Recommendation", str(recommendation_id))
    campaign = (await db.execute(
        select(Campaign)
        .where(Campaign.id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one()
    rec = (await db.execute(
        select(Recommendation)
        .where(Recommendation.id == recommendation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one()
    return rec, campaign


async def _check_owner(db: AsyncSession, campaign: Campaign, user: User) -> None:
    if campaign.user_id == user.id:
        return
    if campaign.google_ads_account_id:
        account = await db.get(GoogleAdsAccount, campaign.google_ads_account_id)
        if account and account.admin_user_id == user.id:
            return
    raise AccessDenied("Campaign belongs to another admin")


async def apply_recommendation(
    db: AsyncSession,
    recommendation_id,
    user: User,
    now: Optional[datetime] = None,
) -> Recommendation:
    if not user.is_admin:
        raise AccessDenied("Only admins can apply recommendations")
    now = now or utcnow()

    async with db.begin_nested():
        rec, campaign = await _load_for_update(db, recommendation_id)
        await _check_owner(db, campaign, user)

        if rec.status != RecommendationStatus.PENDING.value:
            raise InvalidState(f"Recommendation is already {rec.status}")
        if rec.type != RecommendationType.ACTIONABLE.value:
            raise InvalidState(f"Only actionable recommendations can be applied (this one is {rec.type})")
        if not is_eligible(campaign, now):
            raise InvalidState(f"Campaign is in burn-in until {campaign.burn_in_until.isoformat()}")

        changes = (rec.action_data or {}).get("changes") or {}
        before, after = apply_changes(campaign, changes)
        campaign.last_modified = now
        burn_in_until = begin_cooldown(campaign, now=now)

        rec.status = RecommendationStatus.APPLIED.value
        rec.applied_at = now

        await audit_service.record(
            db,
            action=audit_service.APPLY_RECOMMENDATION,
            details=f"Applied '{rec.title}' to campaign '{campaign.name}'",
            performed_by=PerformedBy.USER.value,
            user_id=user.id,
            campaign_id=campaign.id,
            recommendation_id=rec.id,
            ai_model=rec.ai_model,
            change_detail={
                "before": before,
                "after": after,
                "burn_in_until": burn_in_until.isoformat(),
            },
        )

    logger.info(f"{user.email} applied recommendation {rec.id} on campaign {campaign.id}: {after}")
    return rec


async def dismiss_recommendation(
    db: AsyncSession,
    recommendation_id,
    user: User,
    reason: Optional[str] = None,
) -> Recommendation:
    if not user.is_admin:
        raise AccessDenied("Only admins can dismiss recommendations")

    async with db.begin_nested():
        rec, campaign = await _load_for_update(db, recommendation_id)
        await _check_owner(db, campaign, user)
        if rec.status != RecommendationStatus.PENDING.value:
            raise InvalidState(f"Recommendation is already {rec.status}")

        rec.status = RecommendationStatus.DISMISSED.value
        details = f"Dismissed '{rec.title}'"
        if reason:
            details += f": {reason}"
        await audit_service.record(
            db,
            action=audit_service.DISMISS_RECOMMENDATION,
            details=details,
            performed_by=PerformedBy.USER.value,
            user_id=user.id,
            campaign_id=campaign.id,
            recommendation_id=rec.id,
            ai_model=rec.ai_model,
            change_detail={"status": {"before": "pending", "after": "dismissed"}},
        )

    logger.info(f"{user.email} dismissed recommendation {rec.id}")
    return rec
