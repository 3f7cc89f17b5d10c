"""
Accounts Router: Google Ads accounts connected by admins.

Admins connect and disconnect accounts; sub-accounts can list the accounts
they are permitted to see. Disconnecting deactivates the account and wipes
everything synced under it, so it requires ?confirm=true.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user, require_admin
from app.crypto import encrypt_value
from app.database import get_db
from app.models import (
    AuditLog, Campaign, CampaignPerformanceDaily, GoogleAdsAccount,
    Recommendation, User, UserSettings,
)
from app.services import audit_service
from app.services.account_scope import find_owning_admin, permitted_account_ids
from app.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["Accounts"])


# ── Schemas ────────────────────────────────────────────────────────────

class AccountConnectRequest(BaseModel):
    customer_id: str
    customer_name: str
    refresh_token: str
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    is_primary: bool = False
    parent_customer_id: Optional[str] = None


def _serialize_account(a: GoogleAdsAccount) -> dict:
    return {
        "id": str(a.id),
        "customer_id": a.customer_id,
        "customer_name": a.customer_name,
        "is_active": a.is_active,
        "is_primary": a.is_primary,
        "parent_customer_id": a.parent_customer_id,
        "token_expires_at": a.token_expires_at.isoformat() if a.token_expires_at else None,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


# ── Endpoints ──────────────────────────────────────────────────────────

@router.get("")
async def list_accounts(
    include_inactive: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Admins see their own accounts; sub-accounts see their permitted set."""
    if user.is_admin:
        q = select(GoogleAdsAccount).where(GoogleAdsAccount.admin_user_id == user.id)
        if not include_inactive:
            q = q.where(GoogleAdsAccount.is_active.is_(True))
    else:
        admin = await find_owning_admin(db, user)
        _, permitted = await permitted_account_ids(db, user, admin)
        if not permitted:
            return {"accounts": []}
        q = select(GoogleAdsAccount).where(GoogleAdsAccount.id.in_(permitted))
    result = await db.execute(q.order_by(GoogleAdsAccount.customer_name))
    return {"accounts": [_serialize_account(a) for a in result.scalars().all()]}


@router.post("")
async def connect_account(
    payload: AccountConnectRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Connect an account (or reconnect a previously disconnected one) with fresh tokens."""
    result = await db.execute(
        select(GoogleAdsAccount).where(
            GoogleAdsAccount.admin_user_id == admin.id,
            GoogleAdsAccount.customer_id == payload.customer_id,
        )
    )
    account = result.scalar_one_or_none()
    if account and account.is_active:
        raise HTTPException(status_code=400, detail="Account already connected")

    if account is None:
        account = GoogleAdsAccount(admin_user_id=admin.id, customer_id=payload.customer_id)
        db.add(account)
    account.customer_name = payload.customer_name
    account.refresh_token = encrypt_value(payload.refresh_token)
    account.access_token = encrypt_value(payload.access_token)
    account.token_expires_at = payload.token_expires_at
    account.is_primary = payload.is_primary
    account.parent_customer_id = payload.parent_customer_id
    account.is_active = True
    await db.flush()

    await audit_service.record(
        db,
        action=audit_service.ACCOUNT_CONNECTED,
        details=f"Connected Google Ads account {payload.customer_name} ({payload.customer_id})",
        user_id=admin.id,
        change_detail={"account_id": str(account.id)},
    )
    logger.info(f"{admin.email} connected account {payload.customer_id}")
    return _serialize_account(account)


@router.delete("/{account_id}")
async def disconnect_account(
    account_id: str,
    confirm: bool = Query(False),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Deactivate the account and permanently delete its campaigns, their
    recommendations, audit rows and daily performance. Irreversible.
    """
    if not confirm:
        raise HTTPException(
            status_code=400,
            detail="Disconnecting permanently deletes all campaigns, recommendations and history "
                   "for this account. Repeat with ?confirm=true.",
        )
    aid = parse_uuid(account_id, "account_id")
    account = (await db.execute(
        select(GoogleAdsAccount).where(GoogleAdsAccount.id == aid, GoogleAdsAccount.admin_user_id == admin.id)
    )).scalar_one_or_none()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    campaign_ids = select(Campaign.id).where(Campaign.google_ads_account_id == aid)
    counts = {}
    for label, model in (
        ("audit_logs", AuditLog),
        ("recommendations", Recommendation),
        ("daily_rows", CampaignPerformanceDaily),
    ):
        r = await db.execute(delete(model).where(model.campaign_id.in_(campaign_ids)))
        counts[label] = r.rowcount
    r = await db.execute(delete(Campaign).where(Campaign.google_ads_account_id == aid))
    counts["campaigns"] = r.rowcount

    # Drop the account from every master list and view filter
    settings_rows = (await db.execute(select(UserSettings))).scalars().all()
    for row in settings_rows:
        for column in ("selected_google_ads_accounts", "current_view_accounts"):
            current = list(getattr(row, column) or [])
            if str(aid) in current:
                setattr(row, column, [a for a in current if a != str(aid)])

    account.is_active = False
    account.access_token = None
    await db.flush()

    await audit_service.record(
        db,
        action=audit_service.ACCOUNT_DISCONNECTED,
        details=f"Disconnected Google Ads account {account.customer_name} ({account.customer_id})",
        user_id=admin.id,
        change_detail={"account_id": str(aid), "deleted": counts},
    )
    logger.warning(f"{admin.email} disconnected account {account.customer_id}; deleted {counts}")
    return {"ok": True, "deleted": counts}
