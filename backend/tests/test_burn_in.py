"""
Tests for the burn-in cooldown guard.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

from app.services.burn_in import begin_cooldown, cooldown_remaining, default_cooldown, is_eligible

NOW = datetime(2024, 6, 1, 12, 0, 0)


def test_never_changed_campaign_is_eligible():
    assert is_eligible(SimpleNamespace(burn_in_until=None), NOW) is True


def test_cooling_until_expiry():
    campaign = SimpleNamespace(burn_in_until=NOW + timedelta(hours=1))
    assert is_eligible(campaign, NOW) is False
    assert cooldown_remaining(campaign, NOW) == timedelta(hours=1)


def test_expiry_boundary_is_eligible():
    campaign = SimpleNamespace(burn_in_until=NOW)
    assert is_eligible(campaign, NOW) is True
    assert cooldown_remaining(campaign, NOW) == timedelta(0)


def test_begin_cooldown_uses_configured_default():
    campaign = SimpleNamespace(burn_in_until=None)
    until = begin_cooldown(campaign, now=NOW)
    assert until == NOW + default_cooldown()
    assert campaign.burn_in_until == until
    assert default_cooldown() == timedelta(days=7)


def test_begin_cooldown_custom_duration():
    campaign = SimpleNamespace(burn_in_until=None)
    begin_cooldown(campaign, duration=timedelta(days=3), now=NOW)
    assert is_eligible(campaign, NOW + timedelta(days=2)) is False
    assert is_eligible(campaign, NOW + timedelta(days=3)) is True
