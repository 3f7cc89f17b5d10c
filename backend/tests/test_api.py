"""
HTTP-level tests: status codes, error bodies and role enforcement.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.config import Settings
from app.models import AuditLog, Recommendation
from app.services.ai_service import ReasoningProvider
from app.utils import utcnow


class HalfBrokenProvider(ReasoningProvider):
    provider = "fake"

    def __init__(self, broken_names):
        super().__init__("test")
        self.broken_names = set(broken_names)

    async def _evaluate_raw(self, request):
        if request.name in self.broken_names:
            raise RuntimeError("model overloaded")
        return {"recommendation_type": "monitor", "confidence": 90, "title": "Hold"}


async def _admin_with_campaigns(factory, n=2):
    admin = await factory.admin()
    account = await factory.account(admin)
    campaigns = [await factory.campaign(admin, account, name=f"C{i}") for i in range(n)]
    return admin, account, campaigns


@pytest.mark.anyio
async def test_generate_with_rules_baseline(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory)
    async with api(admin) as client:
        resp = await client.post("/api/recommendations/generate", json={"model_id": "rules:baseline"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["generated"] == 2
    assert body["ai_model"] == "rules:baseline"


@pytest.mark.anyio
async def test_generate_partial_failure_is_207(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 3)
    provider = HalfBrokenProvider({"C1"})

    async def _resolve(db, model_id=None):
        return provider

    with patch("app.routers.recommendations.resolve_reasoning_provider", _resolve):
        async with api(admin) as client:
            resp = await client.post("/api/recommendations/generate", json={})

    assert resp.status_code == 207
    body = resp.json()
    assert body["error"] == "partial_failure"
    assert [f["campaign_id"] for f in body["failed"]] == [str(campaigns[1].id)]
    assert body["generated"] == 2
    stored = (await db.execute(select(Recommendation))).scalars().all()
    assert len(stored) == 2


@pytest.mark.anyio
async def test_generate_without_provider_is_503(db, factory, api):
    admin, _, _ = await _admin_with_campaigns(factory, 1)
    bare = Settings(default_llm_id="", openai_api_key="", anthropic_api_key="", perplexity_api_key="")
    with patch("app.services.settings_service.get_settings", return_value=bare), \
            patch("app.services.ai_service.get_settings", return_value=bare):
        async with api(admin) as client:
            resp = await client.post("/api/recommendations/generate", json={})
    assert resp.status_code == 503
    assert resp.json()["error"] == "provider_unavailable"


@pytest.mark.anyio
async def test_sub_account_cannot_generate(db, factory, api):
    admin, _, _ = await _admin_with_campaigns(factory, 1)
    sub = await factory.sub_account(admin)
    async with api(sub) as client:
        resp = await client.post("/api/recommendations/generate", json={"model_id": "rules:baseline"})
    assert resp.status_code == 403
    assert resp.json()["error"] == "access_denied"


@pytest.mark.anyio
async def test_sub_account_denied_before_provider_lookup(db, factory, api):
    admin, _, _ = await _admin_with_campaigns(factory, 1)
    sub = await factory.sub_account(admin)
    bare = Settings(default_llm_id="", openai_api_key="", anthropic_api_key="", perplexity_api_key="")
    with patch("app.services.settings_service.get_settings", return_value=bare), \
            patch("app.services.ai_service.get_settings", return_value=bare):
        async with api(sub) as client:
            resp = await client.post("/api/recommendations/generate", json={})
    assert resp.status_code == 403
    assert resp.json()["error"] == "access_denied"


@pytest.mark.anyio
async def test_apply_twice_conflicts(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 1)
    rec = await factory.recommendation(campaigns[0], admin)

    async with api(admin) as client:
        first = await client.post(f"/api/recommendations/{rec.id}/apply")
        second = await client.post(f"/api/recommendations/{rec.id}/apply")

    assert first.status_code == 200
    assert first.json()["status"] == "applied"
    assert second.status_code == 409
    assert second.json()["error"] == "invalid_state"


@pytest.mark.anyio
async def test_dismiss_with_reason(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 1)
    rec = await factory.recommendation(campaigns[0], admin, type="monitor", action_data={})

    async with api(admin) as client:
        resp = await client.post(f"/api/recommendations/{rec.id}/dismiss", json={"reason": "Seasonal dip"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "dismissed"


@pytest.mark.anyio
async def test_unknown_recommendation_is_404(db, factory, api):
    admin = await factory.admin()
    async with api(admin) as client:
        resp = await client.post("/api/recommendations/00000000-0000-0000-0000-000000000000/apply")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


@pytest.mark.anyio
async def test_list_applies_confidence_threshold(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 2)
    await factory.recommendation(campaigns[0], admin, confidence=40)
    high = await factory.recommendation(campaigns[1], admin, confidence=90)

    async with api(admin) as client:
        default = await client.get("/api/recommendations")
        loose = await client.get("/api/recommendations", params={"min_confidence": 0})

    assert default.json()["confidence_threshold"] == 70
    assert [r["id"] for r in default.json()["recommendations"]] == [str(high.id)]
    assert len(loose.json()["recommendations"]) == 2


@pytest.mark.anyio
async def test_sub_account_sees_admin_recommendations_but_not_outside_scope(db, factory, api):
    admin, account, campaigns = await _admin_with_campaigns(factory, 1)
    await factory.recommendation(campaigns[0], admin, confidence=90)
    sub = await factory.sub_account(admin)
    stranger = await factory.admin()
    foreign = await factory.account(stranger)

    async with api(sub) as client:
        listed = await client.get("/api/recommendations")
        denied = await client.get("/api/dashboard/summary", params={"account_ids": str(foreign.id)})

    assert len(listed.json()["recommendations"]) == 1
    assert denied.status_code == 403


@pytest.mark.anyio
async def test_dashboard_summary(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 2)
    await factory.recommendation(campaigns[0], admin)

    async with api(admin) as client:
        resp = await client.get("/api/dashboard/summary")
    body = resp.json()
    assert resp.status_code == 200
    assert body["totalSpend"] == 2000.0
    assert body["totalConversions"] == 20
    assert body["avgCpa"] == 100.0
    assert body["pendingRecommendations"]["actionable"] == 1
    assert body["lastGenerated"] is not None


@pytest.mark.anyio
async def test_dashboard_rejects_bad_range(db, factory, api):
    admin = await factory.admin()
    async with api(admin) as client:
        bad_preset = await client.get("/api/dashboard/summary", params={"date_range": "forever"})
        half_range = await client.get("/api/dashboard/summary", params={"start_date": "2024-01-01"})
    assert bad_preset.status_code == 400
    assert half_range.status_code == 400


@pytest.mark.anyio
async def test_view_accounts_outside_permitted_denied(db, factory, api):
    admin = await factory.admin()
    mine = await factory.account(admin)
    sub = await factory.sub_account(admin)
    stranger = await factory.admin()
    foreign = await factory.account(stranger)

    async with api(sub) as client:
        ok = await client.put("/api/settings/user/view-accounts", json={"account_ids": [str(mine.id)]})
        denied = await client.put("/api/settings/user/view-accounts", json={"account_ids": [str(foreign.id)]})

    assert ok.status_code == 200
    assert ok.json()["current_view_accounts"] == [str(mine.id)]
    assert denied.status_code == 403


@pytest.mark.anyio
async def test_campaign_list_shows_burn_in(db, factory, api):
    admin = await factory.admin()
    account = await factory.account(admin)
    await factory.campaign(admin, account, name="Cooling", burn_in_until=utcnow() + timedelta(days=2))

    async with api(admin) as client:
        resp = await client.get("/api/campaigns")
    campaign = resp.json()["campaigns"][0]
    assert campaign["in_burn_in"] is True
    assert campaign["burn_in_remaining_hours"] > 40


@pytest.mark.anyio
async def test_goal_update_is_audited_and_admin_only(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 1)
    sub = await factory.sub_account(admin)
    cid = campaigns[0].id

    async with api(sub) as client:
        forbidden = await client.patch(f"/api/campaigns/{cid}/goals", json={"target_cpa": 40})
    async with api(admin) as client:
        resp = await client.patch(f"/api/campaigns/{cid}/goals", json={"target_cpa": 40, "goal_description": "Leads"})

    assert forbidden.status_code == 403
    assert resp.status_code == 200
    assert resp.json()["target_cpa"] == 40.0
    assert resp.json()["burn_in_until"] is None
    rows = (await db.execute(select(AuditLog).where(AuditLog.action == "update_campaign_goals"))).scalars().all()
    assert len(rows) == 1


@pytest.mark.anyio
async def test_audit_trail_lists_apply(db, factory, api):
    admin, _, campaigns = await _admin_with_campaigns(factory, 1)
    rec = await factory.recommendation(campaigns[0], admin)

    async with api(admin) as client:
        await client.post(f"/api/recommendations/{rec.id}/apply")
        resp = await client.get("/api/audit-trail", params={"action": "apply_recommendation"})

    entries = resp.json()["entries"]
    assert len(entries) == 1
    assert entries[0]["recommendation_id"] == str(rec.id)
    assert entries[0]["change_detail"]["after"] == {"daily_budget": "85.00"}


@pytest.mark.anyio
async def test_unauthenticated_request_rejected(db, api):
    async with api() as client:
        resp = await client.get("/api/recommendations")
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_cron_requires_secret(db, factory, api):
    admin, _, _ = await _admin_with_campaigns(factory, 1)
    configured = Settings(cron_secret="tick-tock", default_llm_id="rules:baseline")

    with patch("app.routers.cron.get_settings", return_value=configured), \
            patch("app.services.ai_service.get_settings", return_value=configured):
        async with api() as client:
            wrong = await client.post("/api/cron/recommendations", headers={"X-Cron-Secret": "guess"})
            ok = await client.post("/api/cron/recommendations", headers={"Authorization": "Bearer tick-tock"})

    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert ok.json()["ai_model"] == "rules:baseline"
    assert ok.json()["runs"][0]["user"] == admin.email
    assert ok.json()["runs"][0]["generated"] == 1
