import datetime as dt
import itertools
from contextlib import aclosing
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient

from resumate.gateway import create_app
from resumate.gateway.auth import SessionUser, authenticate
from resumate.gateway.config import Settings, get_settings
from resumate.gateway.credits import grant
from resumate.gateway.db import close_db, create_session
from resumate.gateway.deps import get_payment_processor
from resumate.gateway.domain_models import PlanType, User
from resumate.gateway.exceptions import PaymentProcessorError
from resumate.gateway.plans import PlanSpec, parse_credits, parse_plan_label
from resumate.gateway.processor import CheckoutSessionRef, StripeProcessor
from resumate.gateway.stripe_events import CheckoutSessionSnapshot, SubscriptionSnapshot


class FakeProcessor(StripeProcessor):
    """In-memory stand-in for Stripe with the same capability set.

    Operations listed in `fail` raise PaymentProcessorError; every call is recorded in `calls`.
    """

    def __init__(self, settings: Settings):
        super().__init__(client=None, settings=settings)  # type: ignore[arg-type]
        self.customers: set[str] = set()
        self.subscriptions: dict[str, SubscriptionSnapshot] = {}
        self.checkout_sessions: dict[str, CheckoutSessionSnapshot] = {}
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self._ids = itertools.count(1)

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise PaymentProcessorError(operation, "simulated failure")

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def add_subscription(
        self,
        subscription_id: str,
        *,
        customer_id: str,
        plan: PlanType | None = None,
        credits: int | None = None,
        status: str = "active",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> SubscriptionSnapshot:
        now = datetime.now(tz=dt.UTC).replace(microsecond=0)
        snapshot = SubscriptionSnapshot(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            current_period_start=period_start or now,
            current_period_end=period_end or now + timedelta(days=30),
            item_id=f"si_{subscription_id}",
            plan=plan,
            credits=credits,
        )
        self.subscriptions[subscription_id] = snapshot
        return snapshot

    async def create_customer(self, *, email, name, user_id):
        self._call("create_customer")
        customer_id = self._next_id("cus")
        self.customers.add(customer_id)
        return customer_id

    async def customer_exists(self, customer_id):
        self._call("customer_exists")
        return customer_id in self.customers

    async def create_checkout_session(self, *, customer_id, plan: PlanSpec, user_id):
        self._call("create_checkout_session")
        session_id = self._next_id("cs")
        url = f"https://checkout.test/{session_id}"
        self.checkout_sessions[session_id] = CheckoutSessionSnapshot(
            id=session_id,
            customer_id=customer_id,
            mode="subscription",
            url=url,
            status="open",
            payment_status="unpaid",
            plan=plan.plan,
            credits=plan.credits,
        )
        return CheckoutSessionRef(id=session_id, url=url)

    async def retrieve_checkout_session(self, session_id):
        self._call("retrieve_checkout_session")
        if session_id not in self.checkout_sessions:
            raise PaymentProcessorError("retrieve_checkout_session", f"No such checkout session: {session_id}")
        return self.checkout_sessions[session_id]

    async def latest_checkout_session(self, customer_id):
        self._call("latest_checkout_session")
        sessions = [s for s in self.checkout_sessions.values() if s.customer_id == customer_id]
        return sessions[-1] if sessions else None

    async def create_subscription(self, *, customer_id, price_id, metadata):
        self._call("create_subscription")
        subscription_id = self._next_id("sub")
        self.add_subscription(
            subscription_id,
            customer_id=customer_id,
            plan=parse_plan_label(metadata.get("plan")),
            credits=parse_credits(metadata.get("credits")),
        )
        return subscription_id

    async def retrieve_subscription(self, subscription_id):
        self._call("retrieve_subscription")
        if subscription_id not in self.subscriptions:
            raise PaymentProcessorError("retrieve_subscription", f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def latest_subscription_id(self, customer_id):
        self._call("latest_subscription_id")
        ids = [s.id for s in self.subscriptions.values() if s.customer_id == customer_id]
        return ids[-1] if ids else None

    async def update_subscription_price(self, subscription_id, *, plan: PlanSpec, user_id):
        self._call("update_subscription_price")
        current = self.subscriptions[subscription_id]
        updated = current.model_copy(update={"plan": plan.plan, "credits": plan.credits})
        self.subscriptions[subscription_id] = updated
        return updated

    async def cancel_subscription(self, subscription_id):
        self._call("cancel_subscription")
        if subscription_id in self.subscriptions:
            self.subscriptions[subscription_id].status = "canceled"

    async def schedule_cancellation(self, subscription_id, *, metadata):
        self._call("schedule_cancellation")
        if subscription_id in self.subscriptions:
            self.subscriptions[subscription_id].cancel_at_period_end = True

    async def create_price(self, plan):
        self._call("create_price")
        return self._next_id("price")

    async def create_portal_session(self, customer_id, *, return_url):
        self._call("create_portal_session")
        return f"https://billing.test/portal/{customer_id}?return_url={return_url}"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        sqlalchemy_echo=False,
        db_drop_and_recreate=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        cors_origins=["*"],
        auth_api_host="",
        auth_project_id="",
        auth_server_key="",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        stripe_price_basic="price_basic",
        stripe_price_pro="price_pro",
        log_dir=str(tmp_path / "logs"),
    )


@pytest_asyncio.fixture(scope="function")
async def app(settings) -> FastAPI:
    await close_db()

    app = create_app(settings)

    async with app.router.lifespan_context(app):
        yield app

    await close_db()


@pytest_asyncio.fixture
async def session(app):
    """Database session for tests."""
    settings = app.dependency_overrides[get_settings]()
    async for session in create_session(settings):
        yield session


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def processor(app, settings) -> FakeProcessor:
    fake = FakeProcessor(settings)
    app.dependency_overrides[get_payment_processor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_payment_processor, None)


@pytest.fixture
def test_identity() -> SessionUser:
    return SessionUser(id="user-123", primary_email="test@example.com", display_name="Test User")


@pytest.fixture
def as_test_user(app, test_identity):
    """Set auth to the regular test identity."""
    app.dependency_overrides[authenticate] = lambda: test_identity
    yield test_identity
    app.dependency_overrides.pop(authenticate, None)


@pytest.fixture
def make_user(session):
    async def _make_user(
        user_id: str = "user-123",
        *,
        plan_type: PlanType = PlanType.FREE,
        credits: int = 0,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        email: str | None = None,
        subscription_end_date: datetime | None = None,
    ) -> User:
        """Seed a user whose ledger agrees with `credits` (one opening grant)."""
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            plan_type=plan_type,
            scraping_frozen=plan_type == PlanType.FREE,
            billing_customer_ref=customer_id,
            billing_subscription_ref=subscription_id,
            subscription_start_date=datetime.now(tz=dt.UTC) if subscription_id else None,
            subscription_end_date=subscription_end_date,
        )
        session.add(user)
        await session.commit()
        if credits:
            await grant(session, user_id, credits, meta={"seed": True})
        return await session.get(User, user_id, populate_existing=True)

    return _make_user


@pytest.fixture
def reload_user(session):
    """Re-read a user, bypassing whatever the test session already has cached."""

    async def _reload(user_id: str = "user-123") -> User:
        return await session.get(User, user_id, populate_existing=True)

    return _reload


@pytest.fixture
def in_own_session(app, settings):
    """Run `fn(db)` on a fresh session, one per concurrent caller."""

    async def _run(fn):
        async with aclosing(create_session(settings)) as sessions:
            db = await anext(sessions)
            return await fn(db)

    return _run
