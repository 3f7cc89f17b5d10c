"""
Burn-In Guard: cooldown after a campaign change.

A campaign is Evaluable when burn_in_until is unset or has passed, and
Cooling while burn_in_until is in the future. Only the Action Applier
starts a cooldown; time alone ends it.
"""

from datetime import datetime, timedelta
from typing import Optional

from app.config import get_settings
from app.models import Campaign
from app.utils import utcnow


def default_cooldown() -> timedelta:
    return timedelta(days=get_settings().burn_in_days)


def is_eligible(campaign: Campaign, now: Optional[datetime] = None) -> bool:
    """True when the campaign may be re-evaluated or mutated."""
    now = now or utcnow()
    return campaign.burn_in_until is None or campaign.burn_in_until <= now


def cooldown_remaining(campaign: Campaign, now: Optional[datetime] = None) -> timedelta:
    now = now or utcnow()
    if is_eligible(campaign, now):
        return timedelta(0)
    return campaign.burn_in_until - now


def begin_cooldown(
    campaign: Campaign,
    duration: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Move the campaign into Cooling. Must run inside the caller's transaction;
    nothing is flushed here.
    """
    now = now or utcnow()
    campaign.burn_in_until = now + (duration if duration is not None else default_cooldown())
    return campaign.burn_in_until
