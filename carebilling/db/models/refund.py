"""
Refund Model

Created once per refund request; afterwards only the external refund id and
the settlement status change.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Enum as SQLEnum

from carebilling.db.database import Base


class RefundTrigger(str, enum.Enum):
    DOCTOR_NOT_SUITABLE = "DOCTOR_NOT_SUITABLE"
    PATIENT_DECLINES_REFERRAL = "PATIENT_DECLINES_REFERRAL"
    CANCEL_BEFORE_REVIEW = "CANCEL_BEFORE_REVIEW"
    CANCEL_AFTER_REVIEW = "CANCEL_AFTER_REVIEW"
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    DELIVERY_ISSUE = "DELIVERY_ISSUE"


class RefundMethod(str, enum.Enum):
    WALLET = "WALLET"
    ORIGINAL_PAYMENT = "ORIGINAL_PAYMENT"


class RefundStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Informational only, nothing enforces it locally
ORIGINAL_PAYMENT_SETTLEMENT_DAYS = "5-7"


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    order_id = Column(String(100), nullable=True)
    consultation_id = Column(String(100), nullable=True)

    trigger = Column(SQLEnum(RefundTrigger), nullable=False)
    method = Column(SQLEnum(RefundMethod), nullable=False)
    amount = Column(BigInteger, nullable=False)
    refund_percentage = Column(Integer, nullable=False)
    status = Column(SQLEnum(RefundStatus), default=RefundStatus.PENDING, nullable=False)

    external_refund_id = Column(String(100), nullable=True, unique=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def estimated_settlement_days(self) -> str | None:
        if self.method == RefundMethod.ORIGINAL_PAYMENT and self.status == RefundStatus.PROCESSING:
            return ORIGINAL_PAYMENT_SETTLEMENT_DAYS
        return None
