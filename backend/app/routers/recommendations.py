"""
Recommendations Router: generate, list, apply and dismiss AI recommendations.

Generation and apply/dismiss are admin-only (enforced in the services).
A generation run where some campaigns failed commits what it produced and
answers 207 with the failed campaign ids.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user
from app.database import get_db
from app.errors import AccessDenied, InvalidState, PartialFailure
from app.models import RecommendationStatus, RecommendationType, User
from app.services.account_scope import resolve_account_scope
from app.services.action_service import apply_recommendation, dismiss_recommendation
from app.services.ai_service import resolve_consensus_provider, resolve_reasoning_provider
from app.services.recommendation_service import (
    RecommendationGenerator,
    get_confidence_threshold,
    get_last_generated,
    get_recommendation,
    list_recommendations,
    serialize_recommendation,
)
from app.utils import parse_uuid, parse_uuid_list, split_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recommendations", tags=["Recommendations"])

_STATUSES = {s.value for s in RecommendationStatus}
_TYPES = {t.value for t in RecommendationType}


# ── Request Models ────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    account_ids: list[str] = []
    model_id: Optional[str] = None  # "provider:model"; default from settings


class ConsensusRequest(BaseModel):
    campaign_id: str
    model_ids: list[str] = []  # default: every provider with an API key


class DismissRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


# ── Endpoints ─────────────────────────────────────────────────────────

@router.post("/generate")
async def generate(
    payload: GenerateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Run the generator over the caller's (or the requested) account scope."""
    if not user.is_admin:
        raise AccessDenied("Only admins can generate recommendations")
    provider = await resolve_reasoning_provider(db, payload.model_id)
    generator = RecommendationGenerator(db, provider)
    result = await generator.run(user, parse_uuid_list(payload.account_ids))
    await db.commit()
    if result.failed:
        raise PartialFailure(result.to_dict())
    return result.to_dict()


@router.post("/generate-consensus")
async def generate_consensus(
    payload: ConsensusRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Ask every configured provider about one campaign and store the merged
    verdict as its pending recommendation.
    """
    if not user.is_admin:
        raise AccessDenied("Only admins can generate recommendations")
    campaign_id = parse_uuid(payload.campaign_id, "campaign_id")
    provider = await resolve_consensus_provider(db, payload.model_ids or None)
    generator = RecommendationGenerator(db, provider, timeout_seconds=provider.member_timeout + 5)
    result = await generator.run(user, campaign_ids=[campaign_id])
    if result.skipped_cooling and not result.generated:
        raise InvalidState("Campaign is in its burn-in period")
    await db.commit()
    return {
        **result.to_dict(),
        "consensus": provider.summaries.get(str(campaign_id)),
        "available_models": [m.model_id for m in provider.members],
    }


@router.get("")
async def list_all(
    status: str = Query(RecommendationStatus.PENDING.value),
    type: Optional[str] = Query(None),
    campaign_id: Optional[str] = Query(None),
    account_ids: Optional[str] = Query(None, description="Comma-separated account ids"),
    min_confidence: Optional[int] = Query(None, ge=0, le=100, description="Overrides the user's threshold"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Pending recommendations pass through the confidence filter and come back
    ordered by priority, confidence, then recency. Other statuses are history.
    """
    if status not in _STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of: {', '.join(sorted(_STATUSES))}")
    if type and type not in _TYPES:
        raise HTTPException(status_code=400, detail=f"type must be one of: {', '.join(sorted(_TYPES))}")

    scope = await resolve_account_scope(db, user, split_ids(account_ids))
    threshold = min_confidence if min_confidence is not None else await get_confidence_threshold(db, user)
    rows = await list_recommendations(
        db, user, scope,
        status=status,
        rec_type=type,
        campaign_id=parse_uuid(campaign_id, "campaign_id") if campaign_id else None,
        threshold=threshold,
    )
    return {
        "recommendations": [serialize_recommendation(r) for r in rows],
        "confidence_threshold": threshold if status == RecommendationStatus.PENDING.value else None,
        "scope": scope.to_dict(),
    }


@router.get("/last-generated")
async def last_generated(
    account_ids: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    scope = await resolve_account_scope(db, user, split_ids(account_ids))
    last = await get_last_generated(db, scope)
    return {"last_generated": last.isoformat() if last else None}


@router.get("/{recommendation_id}")
async def get_one(
    recommendation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    scope = await resolve_account_scope(db, user)
    rec = await get_recommendation(db, scope, parse_uuid(recommendation_id, "recommendation_id"))
    return serialize_recommendation(rec)


@router.post("/{recommendation_id}/apply")
async def apply(
    recommendation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rec = await apply_recommendation(db, parse_uuid(recommendation_id, "recommendation_id"), user)
    return serialize_recommendation(rec)


@router.post("/{recommendation_id}/dismiss")
async def dismiss(
    recommendation_id: str,
    payload: Optional[DismissRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rec = await dismiss_recommendation(
        db, parse_uuid(recommendation_id, "recommendation_id"), user,
        reason=payload.reason if payload else None,
    )
    return serialize_recommendation(rec)
