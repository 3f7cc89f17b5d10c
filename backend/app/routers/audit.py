"""
Audit Router: Read the append-only audit trail for the caller's scope.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user
from app.database import get_db
from app.models import User
from app.services.account_scope import resolve_account_scope
from app.services.audit_service import list_audit_trail, serialize_audit
from app.utils import parse_uuid, split_ids

router = APIRouter(tags=["Audit Trail"])


@router.get("/audit-trail")
async def audit_trail(
    campaign_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    account_ids: Optional[str] = Query(None, description="Comma-separated account ids"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Newest first."""
    scope = await resolve_account_scope(db, user, split_ids(account_ids))
    rows = await list_audit_trail(
        db, scope,
        campaign_id=parse_uuid(campaign_id, "campaign_id") if campaign_id else None,
        action=action,
        limit=limit,
        offset=offset,
    )
    return {"entries": [serialize_audit(r) for r in rows], "limit": limit, "offset": offset}
