"""
Users Router: Admin management of users and sub-account access.

Users are never hard-deleted; PATCH is_active=false disables login.
"""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.auth import require_admin
from app.database import get_db
from app.models import GoogleAdsAccount, User, UserRole
from app.services.auth_service import hash_password
from app.services.settings_service import get_or_create_user_settings, get_user_settings
from app.utils import parse_uuid, parse_uuid_list

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])

_ROLES = {r.value for r in UserRole}


# ── Schemas ────────────────────────────────────────────────────────────

class UserResponse(BaseModel):
    id: str
    email: str
    name: str | None
    role: str
    is_active: bool
    created_by: str | None
    selected_google_ads_accounts: list[str]
    last_login_at: datetime | None
    created_at: datetime


class UserCreateRequest(BaseModel):
    email: EmailStr
    password: str
    name: str | None = None
    role: str = UserRole.SUB_ACCOUNT.value


class UserUpdateRequest(BaseModel):
    name: str | None = None
    role: str | None = None
    is_active: bool | None = None


class UserAccountsRequest(BaseModel):
    account_ids: list[str]


def _check_role(role: str) -> str:
    if role not in _ROLES:
        raise HTTPException(status_code=400, detail=f"role must be one of: {', '.join(sorted(_ROLES))}")
    return role


async def _to_response(db: AsyncSession, u: User) -> UserResponse:
    settings_row = await get_user_settings(db, u.id)
    return UserResponse(
        id=str(u.id),
        email=u.email,
        name=u.name,
        role=u.role,
        is_active=u.is_active,
        created_by=str(u.created_by) if u.created_by else None,
        selected_google_ads_accounts=list(settings_row.selected_google_ads_accounts or []) if settings_row else [],
        last_login_at=u.last_login_at,
        created_at=u.created_at,
    )


async def _get_user(db: AsyncSession, user_id: str) -> User:
    uid = parse_uuid(user_id, "user_id")
    result = await db.execute(select(User).where(User.id == uid))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── Endpoints ───────────────────────────────────────────────────────────

@router.get("", response_model=list[UserResponse])
async def list_users(
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """List all users. Admin only."""
    result = await db.execute(select(User).order_by(User.created_at.desc()))
    return [await _to_response(db, u) for u in result.scalars().all()]


@router.post("", response_model=UserResponse)
async def create_user(
    payload: UserCreateRequest,
    current: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a user directly. Admin only. Sub-accounts are linked to the creating admin."""
    existing = await db.execute(select(User).where(User.email == payload.email.lower()))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=payload.email.lower(),
        password_hash=hash_password(payload.password),
        name=payload.name or payload.email.split("@")[0],
        role=_check_role(payload.role),
        is_active=True,
        created_by=current.id,
    )
    db.add(user)
    await db.flush()
    await get_or_create_user_settings(db, user)
    logger.info(f"{current.email} created {user.role} {user.email}")
    return await _to_response(db, user)


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    payload: UserUpdateRequest,
    current: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Update name, role or active flag. Admin only. Admins cannot demote or disable themselves."""
    user = await _get_user(db, user_id)
    if user.id == current.id and (payload.is_active is False or (payload.role and payload.role != user.role)):
        raise HTTPException(status_code=400, detail="Cannot disable or change the role of your own account")

    if payload.name is not None:
        user.name = payload.name
    if payload.role is not None:
        user.role = _check_role(payload.role)
    if payload.is_active is not None:
        user.is_active = payload.is_active

    await db.flush()
    return await _to_response(db, user)


@router.put("/{user_id}/accounts", response_model=UserResponse)
async def set_user_accounts(
    user_id: str,
    payload: UserAccountsRequest,
    current: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Assign the account master list a sub-account may see. Only accounts
    owned by the calling admin can be assigned. An empty list falls back
    to the admin's own selection.
    """
    user = await _get_user(db, user_id)
    account_ids = parse_uuid_list(payload.account_ids)
    if account_ids:
        result = await db.execute(
            select(GoogleAdsAccount.id).where(
                GoogleAdsAccount.id.in_(account_ids),
                GoogleAdsAccount.admin_user_id == current.id,
            )
        )
        owned = set(result.scalars().all())
        unknown = [str(a) for a in account_ids if a not in owned]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown account(s): {', '.join(unknown)}")

    settings_row = await get_or_create_user_settings(db, user)
    settings_row.selected_google_ads_accounts = [str(a) for a in account_ids]
    await db.flush()
    logger.info(f"{current.email} set {len(account_ids)} accounts for {user.email}")
    return await _to_response(db, user)
