"""Shared fixtures: in-memory ledger, fake gateway and seeded tenants."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.errors import InvalidWebhookPayload
from app.modules.billing.models import Plan, Subscription
from app.modules.payment_gateway.interface import (
    ChargeSession,
    GatewayConfig,
    GatewayNotification,
    GatewayPaymentStatus,
    PaymentGatewayClient,
)

FAKE_PROVIDER = "fake"
FAKE_CALLBACK_TOKEN = "fake-callback-token"

# 10 days into a 30-day cycle
CYCLE_START = datetime(2024, 1, 1, 0, 0, 0)
CYCLE_END = CYCLE_START + timedelta(days=30)
NOW = CYCLE_START + timedelta(days=10)

PLAN_PRICES = {
    "free": Decimal("0.00"),
    "basic": Decimal("100.00"),
    "pro": Decimal("200.00"),
    "enterprise": Decimal("1000.00"),
}


class FakeGateway(PaymentGatewayClient):
    """In-process gateway.

    Notifications are ``{"external_id", "status", "amount"}`` and are
    authenticated by the ``x-callback-token`` header.
    """

    def __init__(
        self,
        charge_error: Optional[Exception] = None,
        verify_error: Optional[Exception] = None,
    ):
        super().__init__(GatewayConfig(provider=FAKE_PROVIDER, callback_token=FAKE_CALLBACK_TOKEN))
        self.charge_error = charge_error
        self.verify_error = verify_error
        self.charged_orders: list[str] = []

    async def create_charge_session(
        self,
        invoice_id: uuid.UUID,
        order_id: str,
        amount: Decimal,
        currency: str,
        tenant_id: uuid.UUID,
    ) -> ChargeSession:
        self.charged_orders.append(order_id)
        if self.charge_error is not None:
            raise self.charge_error
        return ChargeSession(
            session_token=f"tok-{order_id}",
            redirect_url=f"https://pay.example.test/{order_id}",
            gateway_reference=order_id,
        )

    async def verify_signature(self, payload: Mapping[str, Any], token: Optional[str]) -> bool:
        if self.verify_error is not None:
            raise self.verify_error
        return token == self.config.callback_token

    def extract_callback_token(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Optional[str]:
        return headers.get("x-callback-token")

    def extract_external_id(self, payload: Mapping[str, Any]) -> Optional[str]:
        return payload.get("external_id")

    def parse_notification(self, payload: Mapping[str, Any]) -> GatewayNotification:
        if not payload.get("external_id") or not payload.get("status"):
            raise InvalidWebhookPayload("external_id and status are required")
        amount = payload.get("amount")
        return GatewayNotification(
            external_id=payload["external_id"],
            status=GatewayPaymentStatus(payload["status"]),
            gross_amount=Decimal(str(amount)) if amount is not None else None,
            raw_status=payload["status"],
        )


def notification(external_id: str, status: str = "paid", amount: Any = None) -> dict:
    payload = {"external_id": external_id, "status": status}
    if amount is not None:
        payload["amount"] = str(amount)
    return payload


def signed_headers(token: str = FAKE_CALLBACK_TOKEN) -> dict:
    return {"x-callback-token": token, "content-type": "application/json"}


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def plans(session):
    """Seed the catalog and return it keyed by code."""
    catalog = {}
    for order, (code, price) in enumerate(PLAN_PRICES.items()):
        plan = Plan(
            code=code,
            name=code.title(),
            price=price,
            currency="IDR",
            billing_interval="monthly",
            interval_days=30,
            sort_order=order,
        )
        session.add(plan)
        catalog[code] = plan
    session.add(
        Plan(code="legacy", name="Legacy", price=Decimal("50.00"), currency="IDR", is_active=False)
    )
    await session.commit()
    return catalog


async def create_subscription(
    session: AsyncSession,
    plan_code: str,
    tenant_id: Optional[uuid.UUID] = None,
) -> Subscription:
    subscription = Subscription(
        tenant_id=tenant_id or uuid.uuid4(),
        plan_code=plan_code,
        current_period_start=CYCLE_START,
        current_period_end=CYCLE_END,
    )
    session.add(subscription)
    await session.commit()
    return subscription


@pytest_asyncio.fixture
async def basic_subscription(session, plans):
    return await create_subscription(session, "basic")


@pytest_asyncio.fixture
async def pro_subscription(session, plans):
    return await create_subscription(session, "pro")
