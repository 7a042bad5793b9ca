"""
Pytest configuration and shared fixtures for backend tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Settings are read at import time, so the test environment goes in first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-with-enough-length-0123456789"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_tests"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret_for_tests"
os.environ["FRONTEND_URL"] = "http://localhost:3000"

import pytest
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator
from uuid import uuid4

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import after path is set
from adapters.payments.stripe_adapter import StripeAdapter
from core.clock import utcnow
from core.interfaces.services import CheckoutSession, GatewaySubscription
from core.security import TokenService
from infrastructure.config import get_settings
from infrastructure.database.connection import get_db
from infrastructure.database.models import Base, MembershipProfile
from services.keyed_lock import KeyedLock

settings = get_settings()
token_service = TokenService(secret_key=settings.jwt_secret_key)

WEBHOOK_SECRET = settings.stripe_webhook_secret

# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Callable clock that tests move by hand."""

    def __init__(self, now: datetime | None = None):
        self.now = now or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeStripeGateway(StripeAdapter):
    """
    Stripe adapter with the network calls replaced by in-memory state.

    Signature verification and event normalisation are the real ones.
    """

    def __init__(self):
        super().__init__(
            api_key="sk_test_fake_key_for_tests",
            webhook_secret=WEBHOOK_SECRET,
            timeout=1.0,
            max_attempts=1,
            backoff=0,
        )
        self.customers: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self.checkout_calls: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    def add_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        status: str,
        current_period_end: datetime | None,
        created: datetime | None = None,
    ) -> GatewaySubscription:
        subscription = GatewaySubscription(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            current_period_end=current_period_end,
            created=created or utcnow(),
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def find_or_create_customer(self, email: str, user_id: str, name: str | None = None) -> str:
        self._maybe_fail()
        for customer_id, customer in self.customers.items():
            if customer["email"] == email:
                return customer_id
        customer_id = f"cus_{len(self.customers) + 1:04d}"
        self.customers[customer_id] = {"email": email, "user_id": user_id, "name": name}
        return customer_id

    async def create_trial_checkout(
        self,
        customer_id: str,
        user_id: str,
        trial_days: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        self._maybe_fail()
        self.checkout_calls.append({
            "customer_id": customer_id,
            "user_id": user_id,
            "trial_days": trial_days,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        session_id = f"cs_test_{len(self.checkout_calls)}"
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        self._maybe_fail()
        return self.subscriptions[subscription_id]

    async def list_customer_subscriptions(self, customer_id: str) -> list[GatewaySubscription]:
        self._maybe_fail()
        found = [s for s in self.subscriptions.values() if s.customer_id == customer_id]
        return sorted(found, key=lambda s: s.created.timestamp() if s.created else 0, reverse=True)

    async def get_customer_email(self, customer_id: str) -> str | None:
        self._maybe_fail()
        customer = self.customers.get(customer_id)
        return customer["email"] if customer else None


def stripe_event(
    event_type: str,
    obj: dict[str, Any],
    created: datetime,
    event_id: str | None = None,
) -> dict[str, Any]:
    """Build a Stripe event envelope."""
    return {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(created.timestamp()),
        "data": {"object": obj},
    }


def subscription_object(
    subscription_id: str,
    customer_id: str,
    status: str,
    period_end: datetime | None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
    }
    if period_end is not None:
        obj["current_period_end"] = int(period_end.timestamp())
    return obj


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(envelope: dict[str, Any]) -> tuple[bytes, str]:
    """Serialise and sign an envelope the way Stripe would deliver it."""
    body = json.dumps(envelope, separators=(",", ":")).encode()
    return body, sign_payload(body)


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
async def profile(db_session: AsyncSession) -> MembershipProfile:
    """A member who has signed up but never paid."""
    member = MembershipProfile(
        id=str(uuid4()),
        email="member@example.com",
        name="Test Member",
    )
    db_session.add(member)
    await db_session.commit()
    return member


@pytest.fixture
async def other_profile(db_session: AsyncSession) -> MembershipProfile:
    member = MembershipProfile(
        id=str(uuid4()),
        email="other@example.com",
        name="Other Member",
    )
    db_session.add(member)
    await db_session.commit()
    return member


@pytest.fixture
def auth_headers(profile: MembershipProfile) -> dict:
    """Generate authentication headers for the test member."""
    access_token = token_service.create_access_token(user_id=profile.id, email=profile.email)
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeStripeGateway,
    clock: FakeClock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    # Import app here to avoid circular imports
    from api.deps import get_clock, get_gateway, get_session_factory
    from main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock

    # Reset rate limiter state between tests to prevent cross-test 429s
    if hasattr(app.state, "limiter"):
        app.state.limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
