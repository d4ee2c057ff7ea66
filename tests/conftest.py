"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- The in-memory billing gateway
- Test data factories
"""
# Settings are validated at import: razorpay without credentials is refused
# outside DEBUG, so the fake gateway is selected before anything imports them
import os
os.environ.setdefault("BILLING_GATEWAY_PROVIDER", "fake")

import pytest
from datetime import datetime
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from carebilling.db.database import Base
from carebilling.db.models.user import User
from carebilling.db.models.payment import Payment, PaymentStatus
from carebilling.db.models.subscription import (
    PlanType,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    Vertical,
)
from carebilling.db.models.fulfillment import Order, Prescription
from carebilling.domain.gateways import reset_billing_gateway
from carebilling.domain.gateways.fake_gateway import InMemoryBillingGateway


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for tests that care about dates
T0 = datetime(2024, 1, 15, 10, 0, 0)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Billing Gateway
# ============================================================================

@pytest.fixture
def fake_gateway() -> InMemoryBillingGateway:
    return InMemoryBillingGateway()


@pytest.fixture(autouse=True)
def reset_gateway_singleton():
    """Each test builds its own gateway from settings"""
    reset_billing_gateway()
    yield
    reset_billing_gateway()


# ============================================================================
# Test Data Factories
# ============================================================================

_phone_counter = 0


def _next_phone() -> str:
    global _phone_counter
    _phone_counter += 1
    return f"+9199990{_phone_counter:05d}"


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        phone_number: str | None = None,
        name: str = "Test Patient",
        is_active: bool = True,
    ) -> User:
        user = User(
            phone_number=phone_number or _next_phone(),
            name=name,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def payment_factory(db_session: AsyncSession):
    """Factory for creating captured payments"""
    _counter = iter(range(1, 10_000))

    async def _create_payment(
        user_id: int,
        amount: int = 100000,
        external_payment_id: str | None = "auto",
        status: PaymentStatus = PaymentStatus.CAPTURED,
    ) -> Payment:
        if external_payment_id == "auto":
            external_payment_id = f"pay_test_{next(_counter)}"
        payment = Payment(
            user_id=user_id,
            amount=amount,
            external_payment_id=external_payment_id,
            status=status,
        )
        db_session.add(payment)
        await db_session.commit()
        await db_session.refresh(payment)
        return payment

    return _create_payment


@pytest.fixture
def plan_factory(db_session: AsyncSession):
    """Factory for creating subscription plans"""
    async def _create_plan(
        vertical: Vertical = Vertical.HAIR_LOSS,
        plan_type: PlanType = PlanType.MONTHLY,
        duration_months: int = 1,
        price: int = 99900,
        external_plan_id: str | None = None,
        is_active: bool = True,
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            vertical=vertical,
            plan_type=plan_type,
            duration_months=duration_months,
            price=price,
            external_plan_id=external_plan_id,
            is_active=is_active,
        )
        db_session.add(plan)
        await db_session.commit()
        await db_session.refresh(plan)
        return plan

    return _create_plan


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating subscriptions directly, bypassing the gateway"""
    _counter = iter(range(1, 10_000))

    async def _create_subscription(
        user_id: int,
        plan_id: int,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        current_period_start: datetime = T0,
        current_period_end: datetime = datetime(2024, 2, 15, 10, 0, 0),
        external_subscription_id: str | None = "auto",
        failed_payment_count: int = 0,
        next_retry_at: datetime | None = None,
    ) -> Subscription:
        if external_subscription_id == "auto":
            external_subscription_id = f"sub_test_{next(_counter)}"
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan_id,
            status=status,
            external_subscription_id=external_subscription_id,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            failed_payment_count=failed_payment_count,
            next_retry_at=next_retry_at,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription


@pytest.fixture
def prescription_factory(db_session: AsyncSession):
    """Factory for creating prescriptions"""
    async def _create_prescription(
        patient_id: int,
        vertical: Vertical = Vertical.HAIR_LOSS,
        consultation_id: str | None = "consult-1",
        is_active: bool = True,
        created_at: datetime | None = None,
    ) -> Prescription:
        prescription = Prescription(
            patient_id=patient_id,
            vertical=vertical,
            consultation_id=consultation_id,
            is_active=is_active,
            created_at=created_at or T0,
        )
        db_session.add(prescription)
        await db_session.commit()
        await db_session.refresh(prescription)
        return prescription

    return _create_prescription


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating fulfilled orders"""
    async def _create_order(
        patient_id: int,
        prescription_id: int | None,
        delivery_address: str = "12 MG Road",
        delivery_city: str = "Bengaluru",
        delivery_pincode: str = "560001",
        medication_cost: int = 89900,
        delivery_cost: int = 10000,
        created_at: datetime | None = None,
    ) -> Order:
        order = Order(
            patient_id=patient_id,
            prescription_id=prescription_id,
            status="DELIVERED",
            delivery_address=delivery_address,
            delivery_city=delivery_city,
            delivery_pincode=delivery_pincode,
            medication_cost=medication_cost,
            delivery_cost=delivery_cost,
            total_amount=medication_cost + delivery_cost,
            created_at=created_at or T0,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order
