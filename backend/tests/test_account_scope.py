"""
Tests for account scope resolution: precedence and sub-account permissions.
"""

import uuid

import pytest

from app.errors import AccessDenied
from app.services.account_scope import (
    SOURCE_ALL, SOURCE_MASTER, SOURCE_REQUEST, SOURCE_VIEW,
    find_owning_admin, resolve_account_scope, resolve_effective_accounts,
)

A, B, C = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()


def test_request_beats_view_and_master():
    scope = resolve_effective_accounts("admin", requested=[A], view=[B], master=[C])
    assert scope.account_ids == [A]
    assert scope.source == SOURCE_REQUEST


def test_view_beats_master():
    scope = resolve_effective_accounts("admin", view=[B], master=[C])
    assert scope.account_ids == [B]
    assert scope.source == SOURCE_VIEW


def test_master_used_when_no_view():
    scope = resolve_effective_accounts("admin", master=[str(C)])
    assert scope.account_ids == [C]
    assert scope.source == SOURCE_MASTER


def test_admin_with_nothing_selected_sees_all():
    scope = resolve_effective_accounts("admin")
    assert scope.account_ids == []
    assert scope.unfiltered is True
    assert scope.source == SOURCE_ALL


def test_admin_request_taken_verbatim():
    """Admins are not bounded by a permitted set."""
    scope = resolve_effective_accounts("admin", requested=[A, B], permitted=[A])
    assert scope.account_ids == [A, B]


def test_sub_account_request_outside_permitted_denied():
    with pytest.raises(AccessDenied) as exc:
        resolve_effective_accounts("sub_account", requested=[A, C], permitted=[A, B])
    assert str(C) in exc.value.detail


def test_sub_account_request_inside_permitted():
    scope = resolve_effective_accounts("sub_account", requested=[B], permitted=[A, B])
    assert scope.account_ids == [B]


def test_sub_account_stale_view_is_intersected():
    scope = resolve_effective_accounts("sub_account", view=[A, C], permitted=[A, B])
    assert scope.account_ids == [A]
    assert scope.source == SOURCE_VIEW


def test_sub_account_fully_stale_view_falls_through():
    scope = resolve_effective_accounts("sub_account", view=[C], permitted=[A, B])
    assert scope.account_ids == [A, B]
    assert scope.source == SOURCE_ALL


def test_duplicates_and_malformed_ids_dropped():
    scope = resolve_effective_accounts("admin", view=[str(A), str(A), "not-a-uuid"])
    assert scope.account_ids == [A]


@pytest.mark.anyio
async def test_sub_account_defaults_to_admin_accounts(db, factory):
    admin = await factory.admin()
    a1 = await factory.account(admin)
    a2 = await factory.account(admin)
    sub = await factory.sub_account(admin)

    scope = await resolve_account_scope(db, sub)
    assert set(scope.account_ids) == {a1.id, a2.id}
    assert scope.owner_id == admin.id


@pytest.mark.anyio
async def test_sub_account_own_master_list_bounds_access(db, factory):
    admin = await factory.admin()
    a1 = await factory.account(admin)
    a2 = await factory.account(admin)
    sub = await factory.sub_account(admin)
    await factory.settings(sub, selected_google_ads_accounts=[str(a1.id)])

    scope = await resolve_account_scope(db, sub)
    assert scope.account_ids == [a1.id]
    with pytest.raises(AccessDenied):
        await resolve_account_scope(db, sub, [a2.id])


@pytest.mark.anyio
async def test_inactive_accounts_not_permitted(db, factory):
    admin = await factory.admin()
    live = await factory.account(admin)
    await factory.account(admin, is_active=False)
    sub = await factory.sub_account(admin)

    scope = await resolve_account_scope(db, sub)
    assert scope.account_ids == [live.id]


@pytest.mark.anyio
async def test_orphan_sub_account_falls_back_to_first_admin(db, factory):
    admin = await factory.admin()
    sub = await factory.sub_account(None)
    assert (await find_owning_admin(db, sub)).id == admin.id


@pytest.mark.anyio
async def test_admin_scope_filters_campaigns_to_own(db, factory):
    from sqlalchemy import select
    from app.models import Campaign

    mine = await factory.admin()
    other = await factory.admin()
    my_account = await factory.account(mine)
    other_account = await factory.account(other)
    c1 = await factory.campaign(mine, my_account)
    await factory.campaign(other, other_account)

    scope = await resolve_account_scope(db, mine)
    rows = (await db.execute(select(Campaign).where(scope.campaign_filter()))).scalars().all()
    assert [c.id for c in rows] == [c1.id]
