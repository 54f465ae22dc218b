"""Pytest configuration and fixtures for the subscription service tests.

Settings are read from the environment at import time, so the test
environment is set before any ``subscription_service`` module is imported.
Each test gets its own SQLite file so that separate sessions see each
other's commits, the way separate workers do against the real database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-subscription-service")
os.environ.setdefault("CASHFREE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CASHFREE_CLIENT_ID", "test-client-id")
os.environ.setdefault("CASHFREE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("FRONTEND_URL", "https://app.example.test")
os.environ.setdefault("LOG_JSON", "false")

from datetime import datetime  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from subscription_service.core.database import Base  # noqa: E402
from subscription_service.modules.notification.channels import (  # noqa: E402
    NotificationChannel,
    NotificationChannelError,
)
from subscription_service.modules.notification.dispatcher import NotificationDispatcher  # noqa: E402
from subscription_service.modules.payment_gateway.exceptions import GatewayError  # noqa: E402
from subscription_service.modules.payment_gateway.interface import (  # noqa: E402
    CreateOrderDTO,
    GatewayOrder,
    GatewayPaymentStatus,
    PaymentGatewayInterface,
)
from subscription_service.modules.plans.catalog import build_default_catalog  # noqa: E402
from subscription_service.modules.subscription.models import (  # noqa: E402
    OrderStatus,
    PaymentOrder,
)
from subscription_service.modules.subscription.repository import AccountRepository  # noqa: E402


class FakeGateway(PaymentGatewayInterface):
    """In-memory gateway recording every call.

    ``statuses`` maps order ids to the payment status the gateway reports;
    unknown orders report ``ACTIVE`` (not yet paid).
    """

    provider = "fake"

    def __init__(self):
        self.created: list[CreateOrderDTO] = []
        self.fetched: list[str] = []
        self.statuses: dict[str, str] = {}
        self.create_error: Optional[GatewayError] = None
        self.fetch_errors: dict[str, Exception] = {}

    async def create_order(self, data: CreateOrderDTO) -> GatewayOrder:
        self.created.append(data)
        if self.create_error is not None:
            raise self.create_error
        return GatewayOrder(
            order_id=data.order_id,
            payment_session_id=f"session_{data.order_id}",
            gateway_order_id=f"cf_{len(self.created)}",
            payment_link=f"https://checkout.example.test/{data.order_id}",
            order_status="ACTIVE",
        )

    async def fetch_payment_status(self, order_id: str) -> GatewayPaymentStatus:
        self.fetched.append(order_id)
        if order_id in self.fetch_errors:
            raise self.fetch_errors[order_id]
        status = self.statuses.get(order_id, "ACTIVE")
        return GatewayPaymentStatus(
            order_id=order_id,
            payment_status=status,
            gateway_payment_id=f"pay_{order_id}" if status != "ACTIVE" else None,
        )


class RecordingChannel(NotificationChannel):
    """Channel keeping delivered messages in memory.

    Deliveries to addresses in ``failing`` raise, like an SMTP rejection.
    """

    channel_name = "recording"

    def __init__(self):
        self.sent: list[dict] = []
        self.failing: set[str] = set()

    async def deliver(self, recipient: str, subject: str, text: str, html: str) -> None:
        if recipient in self.failing:
            raise NotificationChannelError(f"Mailbox unavailable: {recipient}")
        self.sent.append({"recipient": recipient, "subject": subject, "text": text})

    def subjects_for(self, recipient: str) -> list[str]:
        return [m["subject"] for m in self.sent if m["recipient"] == recipient]


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 9, 0, 0)


@pytest.fixture
def catalog():
    return build_default_catalog(trial_duration_days=14)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def dispatcher(channel) -> NotificationDispatcher:
    return NotificationDispatcher(channel=channel, frontend_url="https://app.example.test")


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file with all tables created."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'subscriptions.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as test_session:
        yield test_session


@pytest.fixture
def make_account(session_factory, now):
    """Factory creating an account in its own session.

    Keyword arguments other than the ``create_account`` ones are set on the
    account before it is saved.
    """
    counter = {"n": 0}

    async def factory(email: Optional[str] = None, role: str = "user", **fields):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.test"
        async with session_factory() as factory_session:
            repository = AccountRepository(factory_session)
            account = await repository.create_account(
                email=email,
                name=f"User {counter['n']}",
                role=role,
                trial_days=14,
                now=fields.pop("created_at", now),
            )
            if fields:
                for key, value in fields.items():
                    setattr(account, key, value)
                await repository.save(account, now=now)
            return account

    return factory


@pytest.fixture
def add_order(session_factory, now):
    """Factory attaching an order directly to an account."""

    async def factory(
        account_id,
        order_id: str,
        plan: str = "professional",
        billing_cycle: str = "monthly",
        status: str = OrderStatus.PENDING.value,
        amount: float = 6715,
        created_at: Optional[datetime] = None,
        payment_session_id: Optional[str] = "session_existing",
    ) -> None:
        async with session_factory() as factory_session:
            repository = AccountRepository(factory_session)
            account = await repository.find_user_by_id(account_id)
            account.orders.append(
                PaymentOrder(
                    order_id=order_id,
                    account_id=account.id,
                    plan=plan,
                    billing_cycle=billing_cycle,
                    amount=amount,
                    currency="INR",
                    status=status,
                    payment_session_id=payment_session_id,
                    created_at=created_at or now,
                    updated_at=created_at or now,
                )
            )
            await repository.save(account, now=now)

    return factory


@pytest.fixture
def load_account(session_factory):
    """Read an account and its orders from a fresh session."""

    async def loader(account_id):
        async with session_factory() as read_session:
            return await AccountRepository(read_session).find_user_by_id(account_id)

    return loader
