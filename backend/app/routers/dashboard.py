"""
Dashboard Router: Summary metrics for the caller's account scope.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user
from app.database import get_db
from app.models import User
from app.services.account_scope import resolve_account_scope
from app.services.metrics_service import DATE_PRESETS, get_date_range, load_summary, present_summary
from app.services.recommendation_service import get_last_generated
from app.utils import split_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


def _resolve_range(
    date_range: Optional[str],
    start_date: Optional[date],
    end_date: Optional[date],
) -> Optional[tuple[date, date]]:
    """Preset wins; explicit start/end are both required and end is exclusive."""
    if date_range:
        if date_range not in DATE_PRESETS:
            raise HTTPException(status_code=400, detail=f"date_range must be one of: {', '.join(DATE_PRESETS)}")
        return get_date_range(date_range)
    if start_date or end_date:
        if not (start_date and end_date):
            raise HTTPException(status_code=400, detail="start_date and end_date must be supplied together")
        if end_date <= start_date:
            raise HTTPException(status_code=400, detail="end_date must be after start_date")
        return start_date, end_date
    return None


@router.get("/summary")
async def summary(
    account_ids: Optional[str] = Query(None, description="Comma-separated account ids"),
    date_range: Optional[str] = Query(None, description="Preset, e.g. last_7_days"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None, description="Exclusive"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    scope = await resolve_account_scope(db, user, split_ids(account_ids))
    resolved = _resolve_range(date_range, start_date, end_date)
    data = await load_summary(db, scope, resolved)
    last = await get_last_generated(db, scope)
    return {
        **present_summary(data),
        "dateRange": {"from": resolved[0].isoformat(), "to": resolved[1].isoformat()} if resolved else None,
        "lastGenerated": last.isoformat() if last else None,
        "scope": scope.to_dict(),
    }
