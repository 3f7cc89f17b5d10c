"""
Tests for applying and dismissing recommendations.
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import event, select

from app.errors import AccessDenied, InvalidState, NotFound
from app.models import AuditLog
from app.services import audit_service
from app.services.action_service import apply_changes, apply_recommendation, dismiss_recommendation
from app.utils import utcnow


async def _audit_rows(db, action):
    return (await db.execute(select(AuditLog).where(AuditLog.action == action))).scalars().all()


async def _pending(factory, **rec_kw):
    admin = await factory.admin()
    account = await factory.account(admin)
    campaign = await factory.campaign(admin, account)
    rec = await factory.recommendation(campaign, admin, **rec_kw)
    return admin, campaign, rec


# ── apply_changes ─────────────────────────────────────────────────────

def test_apply_changes_returns_before_and_after():
    campaign = SimpleNamespace(daily_budget=Decimal("100.00"), target_cpa=None, target_roas=None, status="active")
    before, after = apply_changes(campaign, {"daily_budget": "85.00", "status": "paused"})
    assert before == {"daily_budget": "100.00", "status": "active"}
    assert after == {"daily_budget": "85.00", "status": "paused"}
    assert campaign.daily_budget == Decimal("85.00")


@pytest.mark.parametrize("changes", [
    {},
    {"daily_budget": "-5"},
    {"target_cpa": "abc"},
    {"status": "removed"},
])
def test_apply_changes_rejects_unusable(changes):
    campaign = SimpleNamespace(daily_budget=Decimal("100"), target_cpa=None, target_roas=None, status="active")
    with pytest.raises(InvalidState):
        apply_changes(campaign, changes)


# ── apply ─────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_apply_mutates_campaign_and_starts_burn_in(db, factory):
    admin, campaign, rec = await _pending(factory)
    now = utcnow()

    applied = await apply_recommendation(db, rec.id, admin, now=now)

    assert applied.status == "applied"
    assert applied.applied_at == now
    assert campaign.daily_budget == Decimal("85.00")
    assert campaign.last_modified == now
    assert campaign.burn_in_until == now + timedelta(days=7)

    rows = await _audit_rows(db, audit_service.APPLY_RECOMMENDATION)
    assert len(rows) == 1
    assert rows[0].performed_by == "user"
    assert rows[0].change_detail["before"] == {"daily_budget": "100.00"}
    assert rows[0].change_detail["after"] == {"daily_budget": "85.00"}


@pytest.mark.anyio
async def test_second_apply_is_rejected(db, factory):
    admin, _, rec = await _pending(factory)
    await apply_recommendation(db, rec.id, admin)

    with pytest.raises(InvalidState):
        await apply_recommendation(db, rec.id, admin)
    assert len(await _audit_rows(db, audit_service.APPLY_RECOMMENDATION)) == 1


@pytest.mark.anyio
async def test_clarification_cannot_be_applied_but_can_be_dismissed(db, factory):
    admin, _, rec = await _pending(factory, type="clarification", title="Set Campaign Goals")

    with pytest.raises(InvalidState):
        await apply_recommendation(db, rec.id, admin)

    dismissed = await dismiss_recommendation(db, rec.id, admin, reason="Goals are in the brief")
    assert dismissed.status == "dismissed"
    rows = await _audit_rows(db, audit_service.DISMISS_RECOMMENDATION)
    assert len(rows) == 1
    assert "Goals are in the brief" in rows[0].details


@pytest.mark.anyio
async def test_apply_blocked_during_burn_in(db, factory):
    admin = await factory.admin()
    account = await factory.account(admin)
    campaign = await factory.campaign(admin, account, burn_in_until=utcnow() + timedelta(days=1))
    rec = await factory.recommendation(campaign, admin)

    with pytest.raises(InvalidState):
        await apply_recommendation(db, rec.id, admin)
    await db.refresh(rec)
    assert rec.status == "pending"


@pytest.mark.anyio
async def test_failed_audit_write_rolls_back_everything(db, factory, monkeypatch):
    admin, campaign, rec = await _pending(factory)

    async def _broken_record(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(audit_service, "record", _broken_record)
    with pytest.raises(RuntimeError):
        await apply_recommendation(db, rec.id, admin)

    await db.refresh(campaign)
    await db.refresh(rec)
    assert campaign.daily_budget == Decimal("100.00")
    assert campaign.burn_in_until is None
    assert rec.status == "pending"
    assert rec.applied_at is None


@pytest.mark.anyio
@pytest.mark.parametrize("action", [apply_recommendation, dismiss_recommendation])
async def test_campaign_row_loaded_before_recommendation_row(db, engine, factory, action):
    admin, _, rec = await _pending(factory)
    statements = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(" ".join(statement.split()))

    event.listen(engine.sync_engine, "before_cursor_execute", _capture)
    try:
        await action(db, rec.id, admin)
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", _capture)

    campaign_load = next(i for i, s in enumerate(statements) if s.startswith("SELECT campaigns.id"))
    rec_load = next(i for i, s in enumerate(statements) if s.startswith("SELECT recommendations.id"))
    assert campaign_load < rec_load


@pytest.mark.anyio
async def test_sub_account_cannot_apply_or_dismiss(db, factory):
    admin, _, rec = await _pending(factory)
    sub = await factory.sub_account(admin)

    with pytest.raises(AccessDenied):
        await apply_recommendation(db, rec.id, sub)
    with pytest.raises(AccessDenied):
        await dismiss_recommendation(db, rec.id, sub)


@pytest.mark.anyio
async def test_other_admins_campaign_is_denied(db, factory):
    _, _, rec = await _pending(factory)
    intruder = await factory.admin()

    with pytest.raises(AccessDenied):
        await apply_recommendation(db, rec.id, intruder)


@pytest.mark.anyio
async def test_unknown_recommendation(db, factory):
    admin = await factory.admin()
    with pytest.raises(NotFound):
        await dismiss_recommendation(db, uuid.uuid4(), admin)


@pytest.mark.anyio
async def test_dismissed_cannot_be_applied(db, factory):
    admin, _, rec = await _pending(factory)
    await dismiss_recommendation(db, rec.id, admin)

    with pytest.raises(InvalidState):
        await apply_recommendation(db, rec.id, admin)
