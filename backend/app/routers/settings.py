"""
Settings Router: Per-user settings (AI frequency, confidence threshold,
account selection) and application-wide LLM configuration.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user, require_admin
from app.config import get_settings
from app.crypto import encrypt_value, mask_secret
from app.database import get_db
from app.errors import AccessDenied
from app.models import AIFrequency, GoogleAdsAccount, User, UserSettings
from app.services.account_scope import find_owning_admin, permitted_account_ids
from app.services.ai_service import select_model_id
from app.services.settings_service import (
    PROVIDERS,
    api_key_sources,
    effective_api_keys,
    get_app_settings,
    get_or_create_app_settings,
    get_or_create_user_settings,
)
from app.utils import parse_uuid_list

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settings", tags=["Settings"])
settings = get_settings()

_FREQUENCIES = {f.value for f in AIFrequency}

AVAILABLE_LLMS = [
    {"provider": "openai", "model": "gpt-4o", "label": "GPT-4o", "description": "Fast multiturn reasoning"},
    {"provider": "openai", "model": "gpt-4o-mini", "label": "GPT-4o Mini", "description": "Smaller, faster GPT-4o"},
    {"provider": "anthropic", "model": "claude-sonnet-4-20250514", "label": "Claude Sonnet 4", "description": "Balanced performance and capability"},
    {"provider": "perplexity", "model": "sonar", "label": "Perplexity Sonar", "description": "Search-grounded answers"},
    {"provider": "rules", "model": "baseline", "label": "Rules baseline", "description": "Deterministic rules, no API key needed"},
]


# ── Request Models ────────────────────────────────────────────────────

class UserSettingsUpdate(BaseModel):
    ai_frequency: Optional[str] = None
    confidence_threshold: Optional[int] = Field(None, ge=0, le=100)
    email_alerts: Optional[bool] = None
    daily_summaries: Optional[bool] = None
    budget_alerts: Optional[bool] = None


class AccountListUpdate(BaseModel):
    account_ids: list[str]


class LLMSettingsUpdate(BaseModel):
    default_llm_id: Optional[str] = None
    enabled_llms: Optional[list[dict]] = None


class APIKeysUpdate(BaseModel):
    openai_api_key: Optional[str] = None  # Set to "" to clear
    anthropic_api_key: Optional[str] = None
    perplexity_api_key: Optional[str] = None


def _serialize_user_settings(row: UserSettings) -> dict:
    return {
        "ai_frequency": row.ai_frequency,
        "confidence_threshold": row.confidence_threshold,
        "email_alerts": row.email_alerts,
        "daily_summaries": row.daily_summaries,
        "budget_alerts": row.budget_alerts,
        "selected_google_ads_accounts": list(row.selected_google_ads_accounts or []),
        "current_view_accounts": list(row.current_view_accounts or []),
    }


# ── User settings ─────────────────────────────────────────────────────

@router.get("/user")
async def get_user_settings(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return _serialize_user_settings(await get_or_create_user_settings(db, user))


@router.put("/user")
async def update_user_settings(
    payload: UserSettingsUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if payload.ai_frequency is not None and payload.ai_frequency not in _FREQUENCIES:
        raise HTTPException(status_code=400, detail=f"ai_frequency must be one of: {', '.join(sorted(_FREQUENCIES))}")
    row = await get_or_create_user_settings(db, user)
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(row, key, value)
    await db.flush()
    return _serialize_user_settings(row)


@router.put("/user/accounts")
async def update_master_accounts(
    payload: AccountListUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin's master list of accounts to work with. Empty = all connected accounts."""
    account_ids = parse_uuid_list(payload.account_ids)
    if account_ids:
        owned = set((await db.execute(
            select(GoogleAdsAccount.id).where(
                GoogleAdsAccount.id.in_(account_ids),
                GoogleAdsAccount.admin_user_id == admin.id,
                GoogleAdsAccount.is_active.is_(True),
            )
        )).scalars().all())
        unknown = [str(a) for a in account_ids if a not in owned]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown account(s): {', '.join(unknown)}")
    row = await get_or_create_user_settings(db, admin)
    row.selected_google_ads_accounts = [str(a) for a in account_ids]
    await db.flush()
    return _serialize_user_settings(row)


@router.put("/user/view-accounts")
async def update_view_accounts(
    payload: AccountListUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard view filter. Sub-accounts may only pick from their permitted accounts."""
    account_ids = parse_uuid_list(payload.account_ids)
    if account_ids and not user.is_admin:
        admin = await find_owning_admin(db, user)
        _, permitted = await permitted_account_ids(db, user, admin)
        outside = [str(a) for a in account_ids if a not in permitted]
        if outside:
            raise AccessDenied(f"Account(s) not permitted for this user: {', '.join(outside)}")
    row = await get_or_create_user_settings(db, user)
    row.current_view_accounts = [str(a) for a in account_ids]
    await db.flush()
    return _serialize_user_settings(row)


# ── LLM configuration (admin) ─────────────────────────────────────────

@router.get("/llm")
async def get_llm_settings(
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Default model, enabled models, and the options usable with the keys
    configured (env or Settings). The rules baseline is always available.
    """
    row = await get_app_settings(db)
    keys = effective_api_keys(row)
    providers = {p: bool(keys.get(p)) for p in PROVIDERS}
    available = [llm for llm in AVAILABLE_LLMS if llm["provider"] == "rules" or providers.get(llm["provider"])]
    enabled = row.enabled_llms if row and row.enabled_llms else [
        {"provider": llm["provider"], "model": llm["model"], "label": llm["label"]} for llm in available
    ]
    return {
        "default_llm_id": select_model_id(row.default_llm_id if row else None, keys),
        "default_llm_source": "env" if settings.default_llm_id else ("settings" if row and row.default_llm_id else "auto"),
        "enabled_llms": enabled,
        "available_llms": available,
        "providers_configured": providers,
    }


@router.put("/llm")
async def update_llm_settings(
    payload: LLMSettingsUpdate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    row = await get_or_create_app_settings(db)
    if payload.default_llm_id is not None:
        if payload.default_llm_id and ":" not in payload.default_llm_id:
            raise HTTPException(status_code=400, detail="default_llm_id must look like 'provider:model'")
        row.default_llm_id = payload.default_llm_id or None
    if payload.enabled_llms is not None:
        row.enabled_llms = [
            {"provider": item["provider"], "model": item["model"], "label": item.get("label", item["model"])}
            for item in payload.enabled_llms
            if isinstance(item, dict) and item.get("provider") and item.get("model")
        ]
    await db.flush()
    return {"default_llm_id": row.default_llm_id, "enabled_llms": row.enabled_llms}


@router.get("/api-keys")
async def get_api_keys(
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Which provider keys are configured, where from, and a masked preview."""
    row = await get_app_settings(db)
    keys = effective_api_keys(row)
    sources = api_key_sources(row)
    return {
        p: {"configured": bool(keys.get(p)), "source": sources[p], "masked": mask_secret(keys.get(p))}
        for p in PROVIDERS
    }


@router.put("/api-keys")
async def update_api_keys(
    payload: APIKeysUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Save API keys encrypted. Env vars still take precedence when set."""
    row = await get_or_create_app_settings(db)
    for provider in PROVIDERS:
        value = getattr(payload, f"{provider}_api_key")
        if value is None:
            continue
        setattr(row, f"{provider}_api_key", encrypt_value(value.strip()) if value.strip() else None)
    await db.flush()
    logger.info(f"{admin.email} updated provider API keys")
    return {p: bool(getattr(row, f"{p}_api_key")) for p in PROVIDERS}
