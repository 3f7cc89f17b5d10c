"""
Tests for login, JWT handling and admin user management.
"""

import pytest

from app.services.auth_service import create_access_token, decode_access_token, hash_password


def test_token_round_trip():
    token = create_access_token("0b0e7c1e-0000-4000-8000-000000000001", "a@example.com", "admin")
    payload = decode_access_token(token)
    assert payload["email"] == "a@example.com"
    assert payload["role"] == "admin"
    assert decode_access_token(token + "x") is None


@pytest.mark.anyio
async def test_login_and_whoami(db, factory, api):
    admin = await factory.admin(email="owner@example.com", password_hash=hash_password("s3cret-pass"))

    async with api() as client:
        bad = await client.post("/api/auth/login", json={"email": "owner@example.com", "password": "nope"})
        ok = await client.post("/api/auth/login", json={"email": "Owner@Example.com", "password": "s3cret-pass"})
        token = ok.json()["access_token"]
        me = await client.get("/api/auth/whoami", headers={"Authorization": f"Bearer {token}"})

    assert bad.status_code == 401
    assert ok.status_code == 200
    assert me.json()["id"] == str(admin.id)
    assert admin.last_login_at is not None


@pytest.mark.anyio
async def test_disabled_user_cannot_log_in(db, factory, api):
    await factory.admin(email="gone@example.com", password_hash=hash_password("pw-123456"), is_active=False)
    async with api() as client:
        resp = await client.post("/api/auth/login", json={"email": "gone@example.com", "password": "pw-123456"})
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_admin_creates_sub_account_linked_to_itself(db, factory, api):
    admin = await factory.admin()
    async with api(admin) as client:
        resp = await client.post("/api/users", json={"email": "viewer@example.com", "password": "pw-123456"})
        dup = await client.post("/api/users", json={"email": "viewer@example.com", "password": "pw-123456"})
    assert resp.status_code == 200
    assert resp.json()["role"] == "sub_account"
    assert resp.json()["created_by"] == str(admin.id)
    assert dup.status_code == 400


@pytest.mark.anyio
async def test_admin_cannot_demote_itself(db, factory, api):
    admin = await factory.admin()
    async with api(admin) as client:
        resp = await client.patch(f"/api/users/{admin.id}", json={"role": "sub_account"})
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_assign_accounts_to_sub_account(db, factory, api):
    admin = await factory.admin()
    mine = await factory.account(admin)
    stranger = await factory.admin()
    foreign = await factory.account(stranger)
    sub = await factory.sub_account(admin)

    async with api(admin) as client:
        ok = await client.put(f"/api/users/{sub.id}/accounts", json={"account_ids": [str(mine.id)]})
        bad = await client.put(f"/api/users/{sub.id}/accounts", json={"account_ids": [str(foreign.id)]})

    assert ok.status_code == 200
    assert ok.json()["selected_google_ads_accounts"] == [str(mine.id)]
    assert bad.status_code == 400


@pytest.mark.anyio
async def test_sub_account_cannot_manage_users(db, factory, api):
    admin = await factory.admin()
    sub = await factory.sub_account(admin)
    async with api(sub) as client:
        resp = await client.get("/api/users")
    assert resp.status_code == 403
