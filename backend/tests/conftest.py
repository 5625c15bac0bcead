"""Shared test configuration and fixtures.

Each test gets its own in-memory SQLite database (aiosqlite) with all tables
created, so tests are fully isolated and need no running PostgreSQL.
Stripe is never called: tests patch the adapter functions.
"""

import os

# Settings are read at import time: configure them before importing the app.
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_PRO_MONTHLY_PRICE_ID"] = "price_test_pro_monthly"
os.environ["STRIPE_PRO_YEARLY_PRICE_ID"] = "price_test_pro_yearly"
os.environ["STRIPE_UNLIMITED_MONTHLY_PRICE_ID"] = "price_test_unlimited_monthly"
os.environ["STRIPE_UNLIMITED_YEARLY_PRICE_ID"] = "price_test_unlimited_yearly"
os.environ["ENVIRONMENT"] = "test"

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.billing.dedup import processed_subscriptions  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.subscription import ACTIVE, UserSubscription  # noqa: E402
from app.services.subscription_service import get_plan_id  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def _make_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN, which breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest_asyncio.fixture
async def db_engine():
    """A fresh in-memory database with every table created."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session on the per-test database."""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_dedup_cache():
    """The recent-subscription cache is process-wide; start every test empty."""
    processed_subscriptions.clear()
    yield
    processed_subscriptions.clear()


@pytest_asyncio.fixture
async def make_subscription(db_session: AsyncSession):
    """Factory inserting subscription rows directly, bypassing reconciliation."""

    async def _make(
        user_id: uuid.UUID | None = None,
        plan: str = "pro",
        status: str = ACTIVE,
        stripe_subscription_id: str | None = None,
        stripe_customer_id: str | None = "cus_test_123",
        created_at: datetime | None = None,
        cancel_at_period_end: bool = False,
    ) -> UserSubscription:
        subscription = UserSubscription(
            user_id=user_id or uuid.uuid4(),
            plan_id=await get_plan_id(db_session, plan),
            status=status,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        if created_at is not None:
            subscription.created_at = created_at
        db_session.add(subscription)
        await db_session.flush()
        return subscription

    return _make
