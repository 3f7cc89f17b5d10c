"""
Recommendation Service: generation runs, the confidence filter, and reads.

A generation run evaluates every Evaluable campaign in the caller's scope
concurrently (bounded by a semaphore, each call under a timeout), then
persists verdicts one campaign at a time. Persisting supersedes the
campaign's previous pending recommendation so at most one stays pending.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import AccessDenied, NotFound, ProviderUnavailable
from app.models import (
    AIFrequency, Campaign, CampaignStatus, PerformedBy, Recommendation,
    RecommendationStatus, User, UserRole,
)
from app.services import audit_service
from app.services.account_scope import AccountScope, resolve_account_scope
from app.services.ai_service import ReasoningProvider, ReasoningRequest, Verdict
from app.services.burn_in import is_eligible
from app.services.settings_service import get_user_settings
from app.utils import optional_money, utcnow

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


# ── Generation ───────────────────────────────────────────────────────

@dataclass
class GenerationResult:
    ai_model: str
    evaluated: int = 0
    generated: int = 0
    superseded: int = 0
    skipped_cooling: list[str] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    recommendation_ids: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial_failure" if self.failed else "success"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "ai_model": self.ai_model,
            "evaluated": self.evaluated,
            "generated": self.generated,
            "superseded": self.superseded,
            "skipped_cooling": self.skipped_cooling,
            "failed": self.failed,
            "recommendation_ids": self.recommendation_ids,
        }


class RecommendationGenerator:
    """One generation run for one admin's account scope."""

    def __init__(
        self,
        db: AsyncSession,
        provider: ReasoningProvider,
        max_concurrency: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        history_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.provider = provider
        self.max_concurrency = max_concurrency or settings.ai_max_concurrency
        self.timeout_seconds = timeout_seconds or settings.ai_request_timeout_seconds
        self.history_limit = history_limit or settings.audit_history_limit

    async def run(
        self,
        user: User,
        requested_accounts: Optional[Iterable] = None,
        campaign_ids: Optional[Iterable] = None,
    ) -> GenerationResult:
        """Evaluate the scope, or only the given campaigns within it (unknown ids raise NotFound)."""
        if not user.is_admin:
            raise AccessDenied("Only admins can generate recommendations")

        scope = await resolve_account_scope(self.db, user, requested_accounts)
        result = GenerationResult(ai_model=self.provider.model_id)

        campaigns = await self._campaigns_in_scope(scope, campaign_ids)
        now = utcnow()
        eligible = []
        for c in campaigns:
            if is_eligible(c, now):
                eligible.append(c)
            else:
                result.skipped_cooling.append(str(c.id))

        if not eligible:
            logger.info(f"Generation for {user.email}: no eligible campaigns ({len(result.skipped_cooling)} cooling)")
            await self._record_run(user, result)
            return result

        history = await audit_service.recent_history(self.db, [c.id for c in eligible], self.history_limit)
        requests = [ReasoningRequest.from_campaign(c, history.get(c.id)) for c in eligible]
        result.evaluated = len(requests)

        outcomes = await self._evaluate_all(requests)

        failures = [(req, reason) for req, _, reason in outcomes if reason is not None]
        if len(failures) == len(outcomes):
            reasons = sorted({reason for _, reason in failures})
            logger.error(f"Generation for {user.email}: all {len(outcomes)} evaluations failed: {reasons}")
            raise ProviderUnavailable(
                f"{self.provider.model_id} failed for every campaign ({len(outcomes)}): {'; '.join(reasons)[:500]}"
            )

        by_id = {str(c.id): c for c in eligible}
        for req, verdict, reason in outcomes:
            if reason is not None:
                result.failed.append({"campaign_id": req.campaign_id, "reason": reason})
                continue
            await self._persist(by_id[req.campaign_id], verdict, user, result)

        await self._record_run(user, result)
        logger.info(
            f"Generation for {user.email} via {result.ai_model}: {result.generated} generated, "
            f"{result.superseded} superseded, {len(result.skipped_cooling)} cooling, {len(result.failed)} failed"
        )
        return result

    async def _campaigns_in_scope(self, scope: AccountScope, campaign_ids: Optional[Iterable] = None) -> list[Campaign]:
        # Stable total order so concurrent runs lock campaigns in the same sequence
        q = (
            select(Campaign)
            .where(scope.campaign_filter(), Campaign.status != CampaignStatus.REMOVED.value)
            .order_by(Campaign.name, Campaign.id)
        )
        if campaign_ids is None:
            return list((await self.db.execute(q)).scalars().all())

        wanted = set(campaign_ids)
        found = list((await self.db.execute(q.where(Campaign.id.in_(wanted)))).scalars().all())
        missing = wanted - {c.id for c in found}
        if missing:
            raise NotFound("Campaign", ", ".join(sorted(str(m) for m in missing)))
        return found

    async def _evaluate_all(self, requests: list[ReasoningRequest]) -> list[tuple]:
        """Fan out provider calls. Returns (request, verdict, failure_reason) per campaign."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _evaluate(req: ReasoningRequest) -> tuple:
            async with semaphore:
                try:
                    verdict = await asyncio.wait_for(self.provider.evaluate(req), timeout=self.timeout_seconds)
                    return req, verdict, None
                except asyncio.TimeoutError:
                    logger.warning(f"{self.provider.model_id} timed out for campaign {req.campaign_id}")
                    return req, None, f"timed out after {self.timeout_seconds:g}s"
                except Exception as e:
                    logger.warning(f"{self.provider.model_id} failed for campaign {req.campaign_id}: {e}")
                    return req, None, str(e) or type(e).__name__

        return await asyncio.gather(*(_evaluate(r) for r in requests))

    async def _persist(self, campaign: Campaign, verdict: Verdict, user: User, result: GenerationResult) -> None:
        """Insert-if-no-pending: lock the campaign, supersede, insert. Retries once on a unique clash."""
        campaign_id = campaign.id
        for attempt in range(2):
            try:
                async with self.db.begin_nested():
                    locked = (await self.db.execute(
                        select(Campaign)
                        .where(Campaign.id == campaign_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    )).scalar_one()
                    if not is_eligible(locked):
                        # Applied by someone else while we were evaluating
                        result.skipped_cooling.append(str(campaign_id))
                        return
                    superseded = await self._supersede_pending(locked, user, verdict.ai_model)
                    rec = Recommendation(
                        user_id=user.id,
                        campaign_id=locked.id,
                        type=verdict.type,
                        priority=verdict.priority,
                        title=verdict.title,
                        description=verdict.description,
                        reasoning=verdict.reasoning,
                        ai_model=verdict.ai_model,
                        confidence=verdict.confidence,
                        status=RecommendationStatus.PENDING.value,
                        potential_savings=verdict.potential_savings,
                        action_data=verdict.action_data,
                    )
                    self.db.add(rec)
                    await self.db.flush()
                    detail = {"confidence": verdict.confidence, "priority": verdict.priority}
                    if verdict.consensus:
                        detail["consensus"] = verdict.consensus
                    await audit_service.record(
                        self.db,
                        action=audit_service.RECOMMENDATION_GENERATED,
                        details=f"{verdict.type} recommendation for '{locked.name}': {verdict.title}",
                        performed_by=PerformedBy.AI.value,
                        user_id=user.id,
                        campaign_id=locked.id,
                        recommendation_id=rec.id,
                        ai_model=verdict.ai_model,
                        change_detail=detail,
                    )
                result.generated += 1
                result.superseded += superseded
                result.recommendation_ids.append(str(rec.id))
                return
            except IntegrityError:
                if attempt:
                    logger.error(f"Could not persist recommendation for campaign {campaign_id}: pending row conflict")
                    result.failed.append({"campaign_id": str(campaign_id), "reason": "concurrent generation conflict"})
                    return
                logger.warning(f"Pending recommendation conflict for campaign {campaign_id}; retrying")

    async def _supersede_pending(self, campaign: Campaign, user: User, ai_model: str) -> int:
        r = await self.db.execute(
            select(Recommendation).where(
                Recommendation.campaign_id == campaign.id,
                Recommendation.status == RecommendationStatus.PENDING.value,
            )
        )
        previous = list(r.scalars().all())
        for old in previous:
            old.status = RecommendationStatus.DISMISSED.value
        if previous:
            # Dismissals must reach the DB before the new pending row
            await self.db.flush()
        for old in previous:
            await audit_service.record(
                self.db,
                action=audit_service.RECOMMENDATION_SUPERSEDED,
                details=f"Superseded by a newer recommendation: {old.title}",
                performed_by=PerformedBy.AI.value,
                user_id=user.id,
                campaign_id=campaign.id,
                recommendation_id=old.id,
                ai_model=ai_model,
                change_detail={"status": {"before": "pending", "after": "dismissed"}},
            )
        return len(previous)

    async def _record_run(self, user: User, result: GenerationResult) -> None:
        await audit_service.record(
            self.db,
            action=audit_service.GENERATION_RUN,
            details=(
                f"Generated {result.generated} recommendations "
                f"({len(result.failed)} failed, {len(result.skipped_cooling)} in burn-in)"
            ),
            performed_by=PerformedBy.AI.value,
            user_id=user.id,
            ai_model=result.ai_model,
            change_detail=result.to_dict(),
        )


# ── Scheduled generation ─────────────────────────────────────────────

FREQUENCY_INTERVALS = {
    AIFrequency.DAILY.value: timedelta(days=1),
    AIFrequency.WEEKLY.value: timedelta(days=7),
}


def is_generation_due(frequency: str, last_generated: Optional[datetime], now: datetime) -> bool:
    interval = FREQUENCY_INTERVALS.get(frequency)
    if interval is None:
        return False
    # Small slack so a daily cron firing at the same minute each day is not skipped
    return last_generated is None or now - last_generated >= interval - timedelta(minutes=30)


async def run_scheduled_generation(db: AsyncSession, provider: ReasoningProvider) -> list[dict]:
    """Run generation for every active admin whose ai_frequency is due. Commits per admin."""
    now = utcnow()
    r = await db.execute(
        select(User).where(User.role == UserRole.ADMIN.value, User.is_active.is_(True)).order_by(User.created_at)
    )
    admins = list(r.scalars().all())
    summaries = []
    for admin in admins:
        user_settings = await get_user_settings(db, admin.id)
        frequency = user_settings.ai_frequency if user_settings else AIFrequency.DAILY.value
        scope = await resolve_account_scope(db, admin)
        last = await get_last_generated(db, scope)
        if not is_generation_due(frequency, last, now):
            summaries.append({"user": admin.email, "status": "not_due", "frequency": frequency})
            continue
        try:
            result = await RecommendationGenerator(db, provider).run(admin)
            await db.commit()
            summaries.append({"user": admin.email, **result.to_dict()})
        except ProviderUnavailable as e:
            await db.rollback()
            logger.error(f"Scheduled generation for {admin.email} failed: {e.detail}")
            summaries.append({"user": admin.email, "status": "provider_unavailable", "detail": e.detail})
    return summaries


# ── Confidence filter & reads ────────────────────────────────────────

def filter_by_confidence(recommendations: Iterable, threshold: int) -> list:
    """
    Keep recommendations with confidence >= threshold, ordered by priority
    (high first), then confidence desc, then newest first. Never mutates.
    """
    kept = [r for r in recommendations if r.confidence >= threshold]
    kept.sort(key=lambda r: r.created_at or datetime.min, reverse=True)
    kept.sort(key=lambda r: (PRIORITY_RANK.get(r.priority, len(PRIORITY_RANK)), -r.confidence))
    return kept


async def get_confidence_threshold(db: AsyncSession, user: User) -> int:
    user_settings = await get_user_settings(db, user.id)
    if user_settings and user_settings.confidence_threshold is not None:
        return user_settings.confidence_threshold
    return get_settings().default_confidence_threshold


async def list_recommendations(
    db: AsyncSession,
    user: User,
    scope: AccountScope,
    status: str = RecommendationStatus.PENDING.value,
    rec_type: Optional[str] = None,
    campaign_id=None,
    threshold: Optional[int] = None,
) -> list[Recommendation]:
    """
    Recommendations for campaigns in scope. Pending lists go through the
    confidence filter (user's threshold unless one is passed); history
    lists are newest first and unfiltered.
    """
    q = select(Recommendation).where(
        Recommendation.campaign_id.in_(select(Campaign.id).where(scope.campaign_filter())),
        Recommendation.status == status,
    )
    if rec_type:
        q = q.where(Recommendation.type == rec_type)
    if campaign_id is not None:
        q = q.where(Recommendation.campaign_id == campaign_id)
    r = await db.execute(q.order_by(Recommendation.created_at.desc()))
    rows = list(r.scalars().all())

    if status != RecommendationStatus.PENDING.value:
        return rows
    if threshold is None:
        threshold = await get_confidence_threshold(db, user)
    return filter_by_confidence(rows, threshold)


async def get_recommendation(db: AsyncSession, scope: AccountScope, recommendation_id) -> Recommendation:
    r = await db.execute(
        select(Recommendation).where(
            Recommendation.id == recommendation_id,
            Recommendation.campaign_id.in_(select(Campaign.id).where(scope.campaign_filter())),
        )
    )
    rec = r.scalar_one_or_none()
    if not rec:
        raise NotFound("Recommendation", str(recommendation_id))
    return rec


async def get_last_generated(db: AsyncSession, scope: AccountScope) -> Optional[datetime]:
    """Newest created_at over recommendations in scope, or None."""
    r = await db.execute(
        select(func.max(Recommendation.created_at)).where(
            Recommendation.campaign_id.in_(select(Campaign.id).where(scope.campaign_filter()))
        )
    )
    return r.scalar()


def serialize_recommendation(rec: Recommendation) -> dict:
    return {
        "id": str(rec.id),
        "campaign_id": str(rec.campaign_id),
        "user_id": str(rec.user_id),
        "type": rec.type,
        "priority": rec.priority,
        "title": rec.title,
        "description": rec.description,
        "reasoning": rec.reasoning,
        "ai_model": rec.ai_model,
        "confidence": rec.confidence,
        "status": rec.status,
        "potential_savings": optional_money(rec.potential_savings),
        "action_data": rec.action_data,
        "created_at": rec.created_at.isoformat() if rec.created_at else None,
        "applied_at": rec.applied_at.isoformat() if rec.applied_at else None,
    }

