"""
AI Router: provider availability and campaign-aware chat.

Chat answers are never stored and never change a campaign; they only give
the operator a second opinion on one campaign or on the whole scope.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user
from app.config import get_settings
from app.database import get_db
from app.errors import NotFound, ProviderUnavailable
from app.models import Campaign, User
from app.services import audit_service
from app.services.account_scope import resolve_account_scope
from app.services.ai_service import (
    ReasoningRequest,
    estimate_text_confidence,
    list_providers,
    resolve_consensus_provider,
    resolve_reasoning_provider,
)
from app.services.metrics_service import load_summary, present_summary
from app.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(tags=["AI"])


# ── Request Models ────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    query: str
    campaign_id: Optional[str] = None
    model_id: Optional[str] = None  # Override default LLM for this request


class ChatConsensusRequest(BaseModel):
    query: str
    campaign_id: Optional[str] = None
    model_ids: list[str] = []


# ── Helpers ───────────────────────────────────────────────────────────

async def _chat_context(
    db: AsyncSession,
    user: User,
    campaign_id: Optional[str],
) -> tuple[Optional[ReasoningRequest], Optional[str], str]:
    """
    (campaign request, portfolio context, label). A campaign outside the
    caller's scope is reported as not found.
    """
    scope = await resolve_account_scope(db, user)
    if campaign_id:
        cid = parse_uuid(campaign_id, "campaign_id")
        r = await db.execute(select(Campaign).where(Campaign.id == cid, scope.campaign_filter()))
        campaign = r.scalar_one_or_none()
        if not campaign:
            raise NotFound("Campaign", campaign_id)
        history = await audit_service.recent_history(db, [campaign.id], get_settings().audit_history_limit)
        return ReasoningRequest.from_campaign(campaign, history.get(campaign.id)), None, campaign.name

    s = present_summary(await load_summary(db, scope))
    context = "\n".join([
        f"## Portfolio ({s['totalCampaigns']} campaigns, {s['activeCampaigns']} active), last 7 days",
        f"- Spend: {s['totalSpend']}",
        f"- Conversions: {s['totalConversions']}",
        f"- Conversion value: {s['totalConversionValue']}",
        f"- Avg CPA: {s['avgCpa']}",
        f"- ROAS: {s['roas']}",
        f"- CTR: {s['ctr']}",
        f"- Pending recommendations: {s['totalPendingRecommendations']}",
    ])
    return None, context, "General analysis"


def _require_query(query: str) -> str:
    query = (query or "").strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    return query


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/ai/providers")
async def get_providers(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Configured LLM backends and whether single-model and consensus runs can be served."""
    return await list_providers(db)


@router.post("/chat/query")
async def chat_query(
    payload: ChatRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = _require_query(payload.query)
    request, context, label = await _chat_context(db, user, payload.campaign_id)
    provider = await resolve_reasoning_provider(db, payload.model_id)
    try:
        response = await asyncio.wait_for(
            provider.answer(query, request, context),
            timeout=get_settings().ai_request_timeout_seconds,
        )
    except asyncio.TimeoutError:
        raise ProviderUnavailable(f"{provider.model_id} did not answer in time")
    except Exception as e:
        logger.error(f"Chat query via {provider.model_id} failed: {e}", exc_info=True)
        raise ProviderUnavailable(f"{provider.model_id} failed: {e}")

    logger.info(f"Chat query by {user.email} via {provider.model_id} ({label})")
    return {
        "response": response,
        "ai_model": provider.model_id,
        "confidence": estimate_text_confidence(response),
        "campaign_context": label,
    }


@router.post("/chat/consensus")
async def chat_consensus(
    payload: ChatConsensusRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Ask every configured provider the same question and merge the answers."""
    query = _require_query(payload.query)
    request, context, label = await _chat_context(db, user, payload.campaign_id)
    provider = await resolve_consensus_provider(db, payload.model_ids or None)
    result = await provider.answer_all(query, request, context)
    logger.info(
        f"Chat consensus by {user.email} via {len(result['models'])} models "
        f"({result['agreement_level']}% agreement, {label})"
    )
    return {**result, "ai_model": provider.model_id, "campaign_context": label}
