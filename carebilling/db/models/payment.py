"""
Payment Model - Captured gateway payments

Written by the checkout/payment flow; the refund engine only reads it.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Enum as SQLEnum

from carebilling.db.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)
    external_payment_id = Column(String(100), nullable=True, unique=True)
    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.CAPTURED, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
