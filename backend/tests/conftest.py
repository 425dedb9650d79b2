"""Shared test configuration and fixtures.

Each test gets its own in-memory SQLite database (``aiosqlite`` over a
``StaticPool`` so every session sees the same connection). Google Play is
replaced by an ``AsyncMock``; rate limiter, breaker and idempotency store are
real, fresh instances per test.
"""

import base64
import json
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from digifarmacy.auth.jwt import create_access_token
from digifarmacy.billing.circuit_breaker import CircuitBreaker
from digifarmacy.billing.google_play import (
    GooglePlayClient,
    GooglePlayRequestError,
    PurchaseRecord,
)
from digifarmacy.billing.idempotency import MemoryIdempotencyStore
from digifarmacy.billing.rate_limit import FixedWindowRateLimiter, MemoryRateLimitStore
from digifarmacy.billing.webhooks import WebhookProcessor
from digifarmacy.config import settings
from digifarmacy.database import Base, get_db, utcnow
from digifarmacy.main import app
from digifarmacy.models.subscription import Subscription
from digifarmacy.models.user import User
from digifarmacy.services.purchase_verification import PurchaseVerificationService


def make_token() -> str:
    """A purchase token shaped like a real one (long, opaque)."""
    return "gpa." + uuid.uuid4().hex * 4


# ---------------------------------------------------------------------------
# Database: fresh in-memory schema per test
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Billing components
# ---------------------------------------------------------------------------


@pytest.fixture
def play_client() -> AsyncMock:
    """Google Play client double; set ``verify.return_value`` per test."""
    return AsyncMock(spec=GooglePlayClient)


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "google_play",
        failure_threshold=3,
        success_threshold=2,
        reset_timeout=60.0,
        excluded_exceptions=(GooglePlayRequestError,),
    )


@pytest.fixture
def rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(
        MemoryRateLimitStore(window_seconds=settings.rate_limit_window_seconds),
        settings.rate_limits,
        settings.rate_limit_window_seconds,
    )


@pytest.fixture
def idempotency_store() -> MemoryIdempotencyStore:
    return MemoryIdempotencyStore(ttl_seconds=3600)


@pytest.fixture
def webhook_processor(session_factory, idempotency_store) -> WebhookProcessor:
    return WebhookProcessor(session_factory, idempotency_store, max_age_seconds=60)


@pytest.fixture
def verification_service(play_client, breaker) -> PurchaseVerificationService:
    return PurchaseVerificationService(play_client, breaker)


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    play_client: AsyncMock,
    breaker: CircuitBreaker,
    rate_limiter: FixedWindowRateLimiter,
    webhook_processor: WebhookProcessor,
    verification_service: PurchaseVerificationService,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB and billing doubles."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.circuit_breaker = breaker
    app.state.rate_limiter = rate_limiter
    app.state.webhook_processor = webhook_processor
    app.state.verification_service = verification_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def purchase_record() -> Callable[..., PurchaseRecord]:
    """Build a Google Play purchase record; defaults describe a paid monthly plan."""

    def _make(**overrides: Any) -> PurchaseRecord:
        now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
        data = {
            "orderId": f"GPA.{uuid.uuid4().hex[:4]}-{uuid.uuid4().hex[:4]}",
            "startTimeMillis": str(now_ms - 60_000),
            "expiryTimeMillis": str(now_ms + 30 * 24 * 3600 * 1000),
            "autoRenewing": True,
            "priceAmountMicros": "2941000000",
            "priceCurrencyCode": "LKR",
            "paymentState": 1,
            "acknowledgementState": 0,
        }
        data.update(overrides)
        return PurchaseRecord.from_api({k: v for k, v in data.items() if v is not None})

    return _make


@pytest.fixture
def user_factory(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    async def _make(
        email: str | None = None,
        account_age: timedelta = timedelta(days=30),
        is_active: bool = True,
    ) -> User:
        unique = uuid.uuid4().hex[:8]
        created = utcnow() - account_age
        user = User(
            email=email or f"owner-{unique}@citypharmacy.lk",
            name="Test Pharmacy",
            is_active=is_active,
            role="pharmacy",
            created_at=created,
            updated_at=created,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def subscription_factory(db_session: AsyncSession) -> Callable[..., Awaitable[Subscription]]:
    async def _make(
        user: User,
        status: str = "ACTIVE",
        sku_id: str = "pharmacy_monthly",
        expires_in: timedelta = timedelta(days=20),
        purchase_token: str | None = None,
        last_event_at: datetime | None = None,
        purchased_ago: timedelta = timedelta(days=30),
    ) -> Subscription:
        now = utcnow()
        expiry = now + expires_in
        subscription = Subscription(
            user_id=user.id,
            business_type=sku_id.split("_", 1)[0],
            sku_id=sku_id,
            purchase_token=purchase_token or make_token(),
            order_id=f"GPA.{uuid.uuid4().hex[:8]}",
            status=status,
            purchase_date=min(now, expiry) - purchased_ago,
            expiry_date=expiry,
            auto_renew=True,
            price_amount_micros=2_941_000_000,
            currency_code="LKR",
            version=1,
            last_event_at=last_event_at,
        )
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _make


@pytest.fixture
def push_body() -> Callable[..., bytes]:
    """Build a Pub/Sub push body carrying a subscription notification."""

    def _make(
        purchase_token: str,
        notification_type: int = 2,
        message_id: str | None = None,
        sku_id: str = "pharmacy_monthly",
        publish_time: datetime | None = None,
        event_time: datetime | None = None,
    ) -> bytes:
        publish_time = publish_time or datetime.now(timezone.utc)
        event_time = event_time or publish_time
        notification = {
            "version": "1.0",
            "packageName": settings.google_play_package_name,
            "eventTimeMillis": str(int(event_time.timestamp() * 1000)),
            "subscriptionNotification": {
                "version": "1.0",
                "notificationType": notification_type,
                "purchaseToken": purchase_token,
                "subscriptionId": sku_id,
            },
        }
        envelope = {
            "message": {
                "data": base64.b64encode(json.dumps(notification).encode()).decode(),
                "messageId": message_id or uuid.uuid4().hex,
                "publishTime": publish_time.isoformat().replace("+00:00", "Z"),
            },
            "subscription": "projects/digifarmacy/subscriptions/play-rtdn",
        }
        return json.dumps(envelope).encode()

    return _make


# ---------------------------------------------------------------------------
# Authenticated user
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(user_factory) -> User:
    return await user_factory()


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    token = create_access_token({"sub": str(test_user.id)})
    return {"Authorization": f"Bearer {token}"}
