"""
Wallet Transaction Model - Immutable Ledger

Rows are appended and never updated or deleted. Corrections are made by
appending an offsetting transaction.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    DateTime,
    ForeignKey,
    String,
    Enum as SQLEnum,
    CheckConstraint,
    Index,
)

from carebilling.db.database import Base


class TransactionKind(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class CreditType(str, enum.Enum):
    REFUND = "REFUND"  # never expires
    PROMO = "PROMO"  # expires after PROMO_EXPIRY_DAYS
    COMEBACK = "COMEBACK"  # never expires


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)

    kind = Column(SQLEnum(TransactionKind), nullable=False)
    credit_type = Column(SQLEnum(CreditType), nullable=True)
    amount = Column(BigInteger, nullable=False)  # always positive; kind gives the sign
    balance_after = Column(BigInteger, nullable=False)

    description = Column(String(500), nullable=True)
    reference_id = Column(String(100), nullable=True)
    reference_type = Column(String(50), nullable=True)
    refund_trigger = Column(String(50), nullable=True)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_transaction_amount_positive"),
        Index("ix_wallet_transactions_wallet_created", "wallet_id", "created_at"),
    )

    @property
    def signed_amount(self) -> int:
        return self.amount if self.kind == TransactionKind.CREDIT else -self.amount
