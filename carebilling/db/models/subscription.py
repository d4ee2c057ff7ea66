"""
Subscription Models - Plans and per-user subscriptions

Subscriptions are mutated only by SubscriptionService and never deleted;
CANCELLED and EXPIRED rows stay for audit.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, ForeignKey, Enum as SQLEnum

from carebilling.db.database import Base


class Vertical(str, enum.Enum):
    HAIR_LOSS = "HAIR_LOSS"
    SEXUAL_HEALTH = "SEXUAL_HEALTH"
    WEIGHT_MANAGEMENT = "WEIGHT_MANAGEMENT"
    PCOS = "PCOS"


class PlanType(str, enum.Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"
    MONTHLY_PREMIUM = "MONTHLY_PREMIUM"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    vertical = Column(SQLEnum(Vertical), nullable=False, index=True)
    plan_type = Column(SQLEnum(PlanType), nullable=False)
    duration_months = Column(Integer, nullable=False)
    price = Column(BigInteger, nullable=False)
    external_plan_id = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)

    status = Column(SQLEnum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False, index=True)
    external_subscription_id = Column(String(100), nullable=True, unique=True)

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False, index=True)

    # Failed renewal bookkeeping
    failed_payment_count = Column(Integer, default=0, nullable=False)
    grace_period_end_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    cancelled_at = Column(DateTime, nullable=True)
    active_until = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    resumed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBSCRIPTION_STATUSES
