"""
Account Scope Resolver: which ad accounts a request operates on.

Precedence, first non-empty wins:
  1. account ids passed explicitly with the request
  2. the user's current_view_accounts (dashboard view filter)
  3. the user's selected_google_ads_accounts (admin-curated master list)
  4. every account visible to the role (no filter)

An empty result from step 4 means "show all", never an error.

Sub-accounts own no accounts. Their permitted set is their own master list
when an admin assigned one, else their provisioning admin's master list,
else all of that admin's active accounts. Requests outside it are denied.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AccessDenied
from app.models import Campaign, GoogleAdsAccount, User, UserRole
from app.services.settings_service import get_user_settings

logger = logging.getLogger(__name__)

SOURCE_REQUEST = "request"
SOURCE_VIEW = "view"
SOURCE_MASTER = "master"
SOURCE_ALL = "all"


@dataclass
class AccountScope:
    account_ids: list[uuid.UUID]
    source: str
    # Admin whose accounts/campaigns are visible through this scope
    owner_id: Optional[uuid.UUID] = None
    permitted_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def unfiltered(self) -> bool:
        return not self.account_ids

    def campaign_filter(self):
        """WHERE clause restricting Campaign rows to this scope."""
        if self.account_ids:
            return Campaign.google_ads_account_id.in_(self.account_ids)
        owned_accounts = select(GoogleAdsAccount.id).where(GoogleAdsAccount.admin_user_id == self.owner_id)
        return or_(
            Campaign.user_id == self.owner_id,
            Campaign.google_ads_account_id.in_(owned_accounts),
        )

    def to_dict(self) -> dict:
        return {
            "account_ids": [str(a) for a in self.account_ids],
            "source": self.source,
            "unfiltered": self.unfiltered,
        }


def _as_uuids(values: Optional[Iterable]) -> list[uuid.UUID]:
    out: list[uuid.UUID] = []
    for v in values or []:
        try:
            u = v if isinstance(v, uuid.UUID) else uuid.UUID(str(v))
        except ValueError:
            logger.warning(f"Ignoring malformed account id in settings: {v!r}")
            continue
        if u not in out:
            out.append(u)
    return out


def resolve_effective_accounts(
    role: str,
    requested: Optional[Iterable] = None,
    view: Optional[Iterable] = None,
    master: Optional[Iterable] = None,
    permitted: Optional[Iterable] = None,
) -> AccountScope:
    """
    Pure precedence chain. ``permitted`` is only consulted for sub-accounts;
    admins' explicit requests are taken verbatim.
    """
    is_sub = role == UserRole.SUB_ACCOUNT.value
    requested_ids = _as_uuids(requested)
    view_ids = _as_uuids(view)
    master_ids = _as_uuids(master)
    permitted_ids = _as_uuids(permitted)

    if requested_ids:
        if is_sub:
            outside = [a for a in requested_ids if a not in permitted_ids]
            if outside:
                raise AccessDenied(
                    f"Account(s) not permitted for this user: {', '.join(str(a) for a in outside)}"
                )
        return AccountScope(requested_ids, SOURCE_REQUEST, permitted_ids=permitted_ids)

    if is_sub:
        # Stale view or master entries may reference accounts since revoked
        view_ids = [a for a in view_ids if a in permitted_ids]
        master_ids = [a for a in master_ids if a in permitted_ids]

    if view_ids:
        return AccountScope(view_ids, SOURCE_VIEW, permitted_ids=permitted_ids)
    if master_ids:
        return AccountScope(master_ids, SOURCE_MASTER, permitted_ids=permitted_ids)
    if is_sub:
        return AccountScope(list(permitted_ids), SOURCE_ALL, permitted_ids=permitted_ids)
    return AccountScope([], SOURCE_ALL)


async def find_owning_admin(db: AsyncSession, user: User) -> Optional[User]:
    """The admin whose accounts a user sees: itself, its creator, else the first admin."""
    if user.is_admin:
        return user
    if user.created_by:
        creator = await db.get(User, user.created_by)
        if creator and creator.is_admin and creator.is_active:
            return creator
    result = await db.execute(
        select(User)
        .where(User.role == UserRole.ADMIN.value, User.is_active.is_(True))
        .order_by(User.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def active_account_ids(db: AsyncSession, admin_id) -> list[uuid.UUID]:
    result = await db.execute(
        select(GoogleAdsAccount.id)
        .where(GoogleAdsAccount.admin_user_id == admin_id, GoogleAdsAccount.is_active.is_(True))
        .order_by(GoogleAdsAccount.created_at)
    )
    return list(result.scalars().all())


async def permitted_account_ids(db: AsyncSession, user: User, admin: Optional[User]) -> tuple[list[uuid.UUID], list[uuid.UUID]]:
    """
    Returns (master, permitted) for a sub-account. ``master`` is the list
    step 3 uses; ``permitted`` bounds everything the user may see.
    """
    if admin is None:
        return [], []
    all_active = await active_account_ids(db, admin.id)
    own = await get_user_settings(db, user.id)
    master = _as_uuids(own.selected_google_ads_accounts if own else [])
    if not master:
        admin_settings = await get_user_settings(db, admin.id)
        master = _as_uuids(admin_settings.selected_google_ads_accounts if admin_settings else [])
    master = [a for a in master if a in all_active]
    return master, (master or all_active)


async def resolve_account_scope(
    db: AsyncSession,
    user: User,
    requested: Optional[Iterable] = None,
) -> AccountScope:
    """Load the user's settings and run the precedence chain."""
    user_settings = await get_user_settings(db, user.id)
    view = user_settings.current_view_accounts if user_settings else []

    if user.is_admin:
        master = user_settings.selected_google_ads_accounts if user_settings else []
        scope = resolve_effective_accounts(user.role, requested, view, master)
        scope.owner_id = user.id
        return scope

    admin = await find_owning_admin(db, user)
    master, permitted = await permitted_account_ids(db, user, admin)
    scope = resolve_effective_accounts(user.role, requested, view, master, permitted)
    scope.owner_id = admin.id if admin else None
    return scope
