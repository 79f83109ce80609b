"""Shared fixtures for the pre-market test suite.

Provides:
- engine / session_factory / db_session: one in-memory SQLite database per test
- make_user / renter / agent / admin: user factories
- make_pre_market: factory for PreMarketRequest rows
- bus: an event bus stand-in that records emitted events
- gateway: a fake Stripe client that hands out predictable intents
- api: httpx client on the app with db, caller, bus and gateway overridden
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from premarket_app.app import app
from premarket_app.core.errors import UnauthorizedError
from premarket_app.core.events import get_event_bus
from premarket_app.core.get_current_user import get_current_user
from premarket_app.core.get_db import Base, get_db_async
from premarket_app.fintechs.stripe_client import (
    StripeClient,
    get_payment_gateway,
    to_minor_units,
)
from premarket_app.models.enums import UserRole
from premarket_app.models.models import PreMarketRequest, User


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    async def _make(
        role: UserRole = UserRole.RENTER,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        phone_number: Optional[str] = "+12125550100",
        is_active: bool = True,
    ) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            full_name=full_name or f"{role.value} {suffix}",
            email=email or f"{role.value.lower()}-{suffix}@example.com",
            phone_number=phone_number,
            role=role,
            is_active=is_active,
            email_subscription_enabled=True,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
async def renter(make_user):
    return await make_user(
        UserRole.RENTER, full_name="Rita Renter", email="rita@example.com"
    )


@pytest.fixture
async def agent(make_user):
    return await make_user(UserRole.AGENT, full_name="Andy Agent")


@pytest.fixture
async def other_agent(make_user):
    return await make_user(UserRole.AGENT, full_name="Olga Agent")


@pytest.fixture
async def admin(make_user):
    return await make_user(UserRole.ADMIN, full_name="Ada Admin")


@pytest.fixture
def make_pre_market(db_session):
    async def _make(renter: User, **overrides) -> PreMarketRequest:
        today = date.today()
        values = dict(
            renter_id=renter.id,
            request_name="2BR near the park",
            description="Quiet block, high floor",
            moving_earliest=today + timedelta(days=10),
            moving_latest=today + timedelta(days=40),
            price_min=Decimal("2500.00"),
            price_max=Decimal("3500.00"),
            locations=[{"borough": "Brooklyn", "neighborhoods": ["Park Slope"]}],
            bedrooms=["2BR"],
            bathrooms=["1"],
            unit_features={"dishwasher": True},
            building_features={"elevator": True},
            pet_policy={"cats_allowed": True},
            guarantor_required={"personal_guarantor": False},
        )
        values.update(overrides)
        request = PreMarketRequest(**values)
        db_session.add(request)
        await db_session.commit()
        return request

    return _make


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class RecordingBus:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def bus():
    return RecordingBus()


class FakeGateway(StripeClient):
    """Stripe client stand-in that never touches the network."""

    def __init__(self):
        super().__init__()
        self.intents = {}
        self.created = []
        self.canceled = []
        self.fail_with: Optional[Exception] = None

    async def create_payment_intent(
        self, *, amount, currency, metadata, idempotency_key=None
    ):
        if self.fail_with:
            raise self.fail_with
        intent_id = f"pi_{len(self.created) + 1}"
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_x",
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        self.intents[intent_id] = intent
        self.created.append((intent, idempotency_key))
        return intent

    async def retrieve_payment_intent(self, payment_intent_id):
        return self.intents[payment_intent_id]

    async def cancel_payment_intent(self, payment_intent_id, reason="abandoned"):
        if self.fail_with:
            raise self.fail_with
        intent = self.intents[payment_intent_id]
        intent.update(status="canceled", cancellation_reason=reason)
        self.canceled.append(payment_intent_id)
        return intent

    def succeed(self, payment_intent_id) -> dict:
        """Mark the intent paid in full and return the webhook object."""
        intent = self.intents[payment_intent_id]
        intent.update(status="succeeded", amount_received=intent["amount"])
        return dict(intent)


@pytest.fixture
def gateway():
    return FakeGateway()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class ApiClient:
    """httpx client bound to the app, with the caller chosen per request."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self.user: Optional[User] = None

    def login(self, user: Optional[User]):
        self.user = user

    def __getattr__(self, name):
        return getattr(self.client, name)


@pytest.fixture
async def api(db_session, bus, gateway):
    async def override_db():
        yield db_session

    async def override_user():
        if api_client.user is None:
            raise UnauthorizedError("Not authenticated")
        return api_client.user

    app.dependency_overrides[get_db_async] = override_db
    app.dependency_overrides[get_current_user] = override_user
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        api_client = ApiClient(client)
        yield api_client

    app.dependency_overrides.clear()
