"""
Pytest configuration and fixtures for testing
"""
import os

# Settings are read at import time, so the test environment must be in place first
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-supabase-jwt-secret-0123456789abcdef")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_BETA_MONTHLY_PRICE_ID", "price_beta_monthly")
os.environ.setdefault("STRIPE_BETA_YEARLY_PRICE_ID", "price_beta_yearly")
os.environ.setdefault("STRIPE_REGULAR_MONTHLY_PRICE_ID", "price_regular_monthly")
os.environ.setdefault("STRIPE_REGULAR_YEARLY_PRICE_ID", "price_regular_yearly")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_app.db")

import itertools  # noqa: E402
import re  # noqa: E402
import time  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from database import Base  # noqa: E402
import database_models  # noqa: E402,F401


def make_engine(db_url: str):
    # NullPool: every checkout opens a fresh connection, so sessions used from
    # different event loops (TestClient vs. pytest-asyncio) never share one
    return create_async_engine(db_url, echo=False, future=True, poolclass=NullPool)


def make_session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_url(tmp_path):
    """A fresh SQLite file per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def test_engine(db_url):
    engine = make_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return make_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an isolated database session for each test.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


class FakeStripe:
    """
    In-memory stand-in for the parts of the stripe SDK the services use.
    Every resource method is a MagicMock so tests can assert on calls or
    inject failures with side_effect.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.customers = {}
        self.subscriptions = {}

        self.Customer = SimpleNamespace(
            list=MagicMock(side_effect=self._list_customers),
            search=MagicMock(side_effect=self._search_customers),
            create=MagicMock(side_effect=self._create_customer),
            modify=MagicMock(side_effect=self._modify_customer),
        )
        self.Subscription = SimpleNamespace(
            create=MagicMock(side_effect=self._create_subscription),
            list=MagicMock(side_effect=self._list_subscriptions),
            retrieve=MagicMock(side_effect=lambda sub_id: self.subscriptions[sub_id]),
            modify=MagicMock(side_effect=self._modify_subscription),
            cancel=MagicMock(side_effect=self._cancel_subscription),
        )
        self.PaymentIntent = SimpleNamespace(create=MagicMock(side_effect=self._create_payment_intent))
        self.Webhook = SimpleNamespace(construct_event=MagicMock())

    def _next_id(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    def add_customer(self, email, user_id=None):
        customer = {"id": self._next_id("cus"), "email": email, "metadata": {"userId": user_id} if user_id else {}}
        self.customers[customer["id"]] = customer
        return customer

    def _list_customers(self, email=None, limit=10):
        # Newest first, as Stripe lists them
        data = [c for c in reversed(list(self.customers.values())) if email is None or c["email"] == email]
        return {"data": data[:limit]}

    def _search_customers(self, query, limit=10):
        match = re.fullmatch(r"metadata\['(\w+)'\]:'(.*)'", query)
        key, value = match.group(1), match.group(2)
        data = [c for c in reversed(list(self.customers.values())) if c["metadata"].get(key) == value]
        return {"data": data[:limit]}

    def _modify_customer(self, customer_id, metadata=None, **params):
        customer = self.customers[customer_id]
        # Stripe merges metadata keys on update
        customer["metadata"].update(metadata or {})
        return customer

    def _create_customer(self, email, metadata=None):
        customer = {"id": self._next_id("cus"), "email": email, "metadata": dict(metadata or {})}
        self.customers[customer["id"]] = customer
        return customer

    def _create_subscription(self, customer, items, metadata=None, **kwargs):
        now = int(time.time())
        subscription = {
            "id": self._next_id("sub"),
            "customer": customer,
            "status": "incomplete",
            "metadata": dict(metadata or {}),
            "current_period_start": now,
            "current_period_end": now + 30 * 86400,
            "trial_end": None,
            "cancel_at_period_end": False,
            "created": now,
            "items": {"data": [{"id": self._next_id("si"), "price": {"id": items[0]["price"]}}]},
        }
        self.subscriptions[subscription["id"]] = subscription
        return subscription

    def _list_subscriptions(self, customer, limit=10, status=None):
        data = [s for s in reversed(list(self.subscriptions.values())) if s["customer"] == customer]
        return {"data": data[:limit]}

    def _modify_subscription(self, sub_id, **params):
        subscription = self.subscriptions[sub_id]
        if "cancel_at_period_end" in params:
            subscription["cancel_at_period_end"] = params["cancel_at_period_end"]
        if "items" in params:
            subscription["items"]["data"][0]["price"] = {"id": params["items"][0]["price"]}
        if "metadata" in params:
            subscription["metadata"].update(params["metadata"])
        return subscription

    def _cancel_subscription(self, sub_id):
        subscription = self.subscriptions[sub_id]
        subscription["status"] = "canceled"
        return subscription

    def _create_payment_intent(self, amount, currency, **kwargs):
        intent_id = self._next_id("pi")
        return {
            "id": intent_id,
            "amount": amount,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret",
        }


@pytest.fixture
def fake_stripe():
    return FakeStripe()
