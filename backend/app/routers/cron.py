"""
Cron / Scheduled Jobs: Endpoint for an external scheduler.

Verifies CRON_SECRET, then runs recommendation generation for every admin
whose ai_frequency (daily / weekly) is due. "manual" admins are skipped.

The scheduler sends either:
  X-Cron-Secret: <CRON_SECRET>
  or Authorization: Bearer <CRON_SECRET>
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.services.ai_service import resolve_reasoning_provider
from app.services.recommendation_service import run_scheduled_generation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    authorization: Optional[str] = Header(None),
) -> None:
    """Verify request came from the scheduler with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


@router.post("/recommendations")
async def cron_recommendations(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """
    Scheduled recommendation generation:
    POST /api/cron/recommendations
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    provider = await resolve_reasoning_provider(db)
    runs = await run_scheduled_generation(db, provider)
    logger.info(f"Cron recommendations: {len(runs)} admins checked via {provider.model_id}")
    return {"status": "ok", "ai_model": provider.model_id, "runs": runs}
