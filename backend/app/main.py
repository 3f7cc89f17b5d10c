"""
Campaign Recommendation Engine: FastAPI Backend
AI-generated optimization recommendations for Google Ads campaigns, gated by
role-based account access, confidence scoring and a post-change burn-in.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import init_db, check_db_connection, async_session
from app.errors import EngineError
from app.routers import (
    accounts, ai, audit, auth, campaigns, cron, dashboard, recommendations,
    settings as settings_router, users,
)
from app.services.auth_service import bootstrap_first_admin

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


async def _bootstrap_first_admin():
    """Create first admin if FIRST_ADMIN_EMAIL and FIRST_ADMIN_PASSWORD are set and no users exist."""
    if not settings.first_admin_email or not settings.first_admin_password:
        return
    async with async_session() as db:
        if await bootstrap_first_admin(db, settings.first_admin_email, settings.first_admin_password):
            await db.commit()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Campaign Recommendation Engine...")
    try:
        await init_db()
        await _bootstrap_first_admin()
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so /api/health can report degraded
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Campaign Recommendation Engine",
    description="AI recommendations for Google Ads campaigns with burn-in and audit trail",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register Routers (each endpoint declares its own auth dependency) ──
app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api")
app.include_router(accounts.router, prefix="/api")
app.include_router(campaigns.router, prefix="/api")
app.include_router(dashboard.router, prefix="/api")
app.include_router(recommendations.router, prefix="/api")
app.include_router(ai.router, prefix="/api")
app.include_router(audit.router, prefix="/api")
app.include_router(settings_router.router, prefix="/api")
app.include_router(cron.router, prefix="/api")  # No JWT, uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Campaign Recommendation Engine",
        "database": "connected" if db_ok else "disconnected",
    }
