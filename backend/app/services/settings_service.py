"""
Settings Service: per-user settings rows and the app-wide provider config.
"""

import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.crypto import decrypt_value
from app.models import AppSettings, User, UserSettings

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "anthropic", "perplexity")


async def get_user_settings(db: AsyncSession, user_id) -> Optional[UserSettings]:
    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_user_settings(db: AsyncSession, user: User) -> UserSettings:
    """Settings row for the user, created with defaults on first access."""
    row = await get_user_settings(db, user.id)
    if row is None:
        row = UserSettings(
            user_id=user.id,
            confidence_threshold=get_settings().default_confidence_threshold,
            selected_google_ads_accounts=[],
            current_view_accounts=[],
        )
        db.add(row)
        await db.flush()
        logger.info(f"Created default settings for user {user.email}")
    return row


async def get_app_settings(db: AsyncSession) -> Optional[AppSettings]:
    result = await db.execute(select(AppSettings).limit(1))
    return result.scalar_one_or_none()


async def get_or_create_app_settings(db: AsyncSession) -> AppSettings:
    row = await get_app_settings(db)
    if row is None:
        row = AppSettings(default_llm_id=None, enabled_llms=[])
        db.add(row)
        await db.flush()
    return row


def effective_api_keys(row: Optional[AppSettings]) -> dict[str, Optional[str]]:
    """Env vars take precedence over keys stored (encrypted) in AppSettings."""
    settings = get_settings()
    keys = {}
    for provider in PROVIDERS:
        env_key = getattr(settings, f"{provider}_api_key")
        stored = getattr(row, f"{provider}_api_key", None) if row else None
        keys[provider] = env_key or (decrypt_value(stored) if stored else None)
    return keys


def api_key_sources(row: Optional[AppSettings]) -> dict[str, str]:
    """"env" | "settings" | "none" per provider."""
    settings = get_settings()
    sources = {}
    for provider in PROVIDERS:
        if getattr(settings, f"{provider}_api_key"):
            sources[provider] = "env"
        elif row and getattr(row, f"{provider}_api_key", None):
            sources[provider] = "settings"
        else:
            sources[provider] = "none"
    return sources


async def get_effective_api_keys(db: AsyncSession) -> dict[str, Optional[str]]:
    return effective_api_keys(await get_app_settings(db))
