"""
Shared fixtures: an in-memory SQLite database per test, model factories,
and an httpx client wired to the app with DB/auth dependencies overridden.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base
from app.models import (
    Campaign, GoogleAdsAccount, Recommendation, RecommendationStatus,
    RecommendationType, User, UserRole, UserSettings,
)
from app.utils import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


class Factory:
    """Creates and flushes model rows with sensible defaults."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _add(self, obj):
        self.db.add(obj)
        await self.db.flush()
        return obj

    async def user(self, role: str = UserRole.ADMIN.value, email: str = None, created_by: User = None, **kw) -> User:
        return await self._add(User(
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.com",
            password_hash=kw.pop("password_hash", "not-a-real-hash"),
            name=kw.pop("name", role.title()),
            role=role,
            is_active=kw.pop("is_active", True),
            created_by=created_by.id if created_by else None,
            **kw,
        ))

    async def admin(self, **kw) -> User:
        return await self.user(role=UserRole.ADMIN.value, **kw)

    async def sub_account(self, admin: User = None, **kw) -> User:
        return await self.user(role=UserRole.SUB_ACCOUNT.value, created_by=admin, **kw)

    async def account(self, admin: User, **kw) -> GoogleAdsAccount:
        return await self._add(GoogleAdsAccount(
            admin_user_id=admin.id,
            customer_id=kw.pop("customer_id", uuid.uuid4().hex[:10]),
            customer_name=kw.pop("customer_name", "Test Account"),
            refresh_token=kw.pop("refresh_token", "encrypted-refresh-token"),
            is_active=kw.pop("is_active", True),
            **kw,
        ))

    async def campaign(self, admin: User, account: GoogleAdsAccount = None, **kw) -> Campaign:
        defaults = {
            "name": f"Campaign {uuid.uuid4().hex[:6]}",
            "type": "search",
            "status": "active",
            "daily_budget": Decimal("100.00"),
            "target_cpa": Decimal("50.00"),
            "spend_7d": Decimal("1000.00"),
            "conversions_7d": 10,
            "conversion_value_7d": Decimal("2500.00"),
            "impressions_7d": 20000,
            "clicks_7d": 400,
            "ctr_7d": Decimal("0.0200"),
            "avg_cpc_7d": Decimal("2.50"),
            "conversion_rate_7d": Decimal("0.0250"),
            "actual_cpa": Decimal("100.00"),
            "actual_roas": Decimal("2.50"),
            "last_modified": utcnow() - timedelta(days=30),
        }
        defaults.update(kw)
        return await self._add(Campaign(
            user_id=admin.id,
            google_ads_account_id=account.id if account else None,
            google_ads_campaign_id=uuid.uuid4().hex[:10],
            **defaults,
        ))

    async def recommendation(self, campaign: Campaign, admin: User, **kw) -> Recommendation:
        rec_type = kw.pop("type", RecommendationType.ACTIONABLE.value)
        action_data = kw.pop("action_data", None)
        if action_data is None and rec_type == RecommendationType.ACTIONABLE.value:
            action_data = {"action_type": "budget_change", "changes": {"daily_budget": "85.00"}, "details": None}
        return await self._add(Recommendation(
            user_id=admin.id,
            campaign_id=campaign.id,
            type=rec_type,
            priority=kw.pop("priority", "medium"),
            title=kw.pop("title", "Reduce Daily Budget 15%"),
            description=kw.pop("description", "Lower the daily budget."),
            reasoning=kw.pop("reasoning", "CPA is above target."),
            ai_model=kw.pop("ai_model", "rules:baseline"),
            confidence=kw.pop("confidence", 75),
            status=kw.pop("status", RecommendationStatus.PENDING.value),
            action_data=action_data,
            **kw,
        ))

    async def settings(self, user: User, **kw) -> UserSettings:
        kw.setdefault("selected_google_ads_accounts", [])
        kw.setdefault("current_view_accounts", [])
        return await self._add(UserSettings(user_id=user.id, **kw))


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def api(db):
    """
    Returns ``make_client(user)``: an AsyncClient whose requests run against
    the test session and are authenticated as ``user``.
    """
    from app.auth import get_current_user
    from app.database import get_db
    from app.main import app

    async def _get_db():
        yield db

    def make_client(user: User = None) -> AsyncClient:
        app.dependency_overrides[get_db] = _get_db
        if user is not None:
            app.dependency_overrides[get_current_user] = lambda: user
        else:
            app.dependency_overrides.pop(get_current_user, None)
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    yield make_client
    app.dependency_overrides.clear()
