"""
Audit Service: append-only AuditLog writer and the readers built on it.

Rows are only ever inserted. Callers own the transaction: record() adds to
the session and flushes so the row commits or rolls back with the change
it describes.
"""

import logging
from collections import defaultdict
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditLog, Campaign, PerformedBy
from app.services.account_scope import AccountScope

logger = logging.getLogger(__name__)

# Action names
APPLY_RECOMMENDATION = "apply_recommendation"
DISMISS_RECOMMENDATION = "dismiss_recommendation"
RECOMMENDATION_GENERATED = "recommendation_generated"
RECOMMENDATION_SUPERSEDED = "recommendation_superseded"
GENERATION_RUN = "recommendation_generation_run"
UPDATE_CAMPAIGN_GOALS = "update_campaign_goals"
CAMPAIGN_SYNC = "campaign_sync"
ACCOUNT_CONNECTED = "account_connected"
ACCOUNT_DISCONNECTED = "account_disconnected"


async def record(
    db: AsyncSession,
    *,
    action: str,
    details: str,
    performed_by: str = PerformedBy.USER.value,
    user_id=None,
    campaign_id=None,
    recommendation_id=None,
    change_detail: Optional[dict] = None,
    ai_model: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        campaign_id=campaign_id,
        recommendation_id=recommendation_id,
        action=action,
        details=details,
        change_detail=change_detail,
        performed_by=performed_by,
        ai_model=ai_model,
    )
    db.add(entry)
    await db.flush()
    return entry


async def recent_history(
    db: AsyncSession,
    campaign_ids: Iterable,
    limit: int = 5,
) -> dict:
    """Newest-first audit entries per campaign, at most ``limit`` each, as plain dicts."""
    ids = list(campaign_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.campaign_id.in_(ids))
        .order_by(AuditLog.created_at.desc())
    )
    history: dict = defaultdict(list)
    for row in result.scalars():
        bucket = history[row.campaign_id]
        if len(bucket) < limit:
            bucket.append({
                "action": row.action,
                "details": row.details,
                "performed_by": row.performed_by,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            })
    return dict(history)


async def list_audit_trail(
    db: AsyncSession,
    scope: AccountScope,
    campaign_id=None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLog]:
    """
    Audit rows for campaigns in scope, plus scope-less rows (run summaries,
    account events) written by the scope's owning admin.
    """
    in_scope = select(Campaign.id).where(scope.campaign_filter())
    q = select(AuditLog)
    if campaign_id is not None:
        q = q.where(AuditLog.campaign_id == campaign_id, AuditLog.campaign_id.in_(in_scope))
    else:
        q = q.where(
            AuditLog.campaign_id.in_(in_scope)
            | (AuditLog.campaign_id.is_(None) & (AuditLog.user_id == scope.owner_id))
        )
    if action:
        q = q.where(AuditLog.action == action)
    q = q.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(q)
    return list(result.scalars().all())


def serialize_audit(row: AuditLog) -> dict:
    return {
        "id": str(row.id),
        "user_id": str(row.user_id) if row.user_id else None,
        "campaign_id": str(row.campaign_id) if row.campaign_id else None,
        "recommendation_id": str(row.recommendation_id) if row.recommendation_id else None,
        "action": row.action,
        "details": row.details,
        "change_detail": row.change_detail,
        "performed_by": row.performed_by,
        "ai_model": row.ai_model,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
