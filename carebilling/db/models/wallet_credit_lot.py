"""
Wallet Credit Lot Model

One lot per credit transaction, tracking how much of that credit is still
unspent. Debits draw lots down nearest-expiry-first, and promo expiry removes
only what is left, so money that was already spent is never expired again.

Invariant: sum(remaining_amount) over a wallet's lots == wallet.balance.
"""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    DateTime,
    ForeignKey,
    Enum as SQLEnum,
    CheckConstraint,
)

from carebilling.db.database import Base
from carebilling.db.models.wallet_transaction import CreditType


class WalletCreditLot(Base):
    __tablename__ = "wallet_credit_lots"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), unique=True, nullable=False)

    credit_type = Column(SQLEnum(CreditType), nullable=False)
    original_amount = Column(BigInteger, nullable=False)
    remaining_amount = Column(BigInteger, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "remaining_amount >= 0 AND remaining_amount <= original_amount",
            name="ck_wallet_credit_lot_remaining_bounds",
        ),
    )
