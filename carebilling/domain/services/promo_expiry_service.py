"""
Promo Expiry Service - removes time-boxed promotional credits

Expiry works on credit lots, not on the original credit amounts: a promo
credit that was already spent has no remaining lot balance and is never
expired a second time.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carebilling.core.dates import utcnow
from carebilling.core.logging import get_logger
from carebilling.db.models.wallet import Wallet
from carebilling.db.models.wallet_credit_lot import WalletCreditLot
from carebilling.db.models.wallet_transaction import CreditType, TransactionKind
from carebilling.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

PROMO_EXPIRY_DESCRIPTION = "Promo credits expired"
PROMO_EXPIRY_REFERENCE_TYPE = "PROMO_EXPIRY"


class PromoExpiryService:

    def __init__(self, db: AsyncSession, wallet_service: Optional[WalletService] = None):
        self.db = db
        self.wallet_service = wallet_service or WalletService(db)

    def _due_lots_filter(self, now: datetime):
        return (
            WalletCreditLot.credit_type == CreditType.PROMO,
            WalletCreditLot.expires_at.is_not(None),
            WalletCreditLot.expires_at <= now,
            WalletCreditLot.remaining_amount > 0,
        )

    async def find_wallets_with_due_promos(self, now: Optional[datetime] = None) -> list[int]:
        """User ids whose wallets hold promo money that is due to expire"""
        now = now or utcnow()
        result = await self.db.execute(
            select(Wallet.user_id)
            .join(WalletCreditLot, WalletCreditLot.wallet_id == Wallet.id)
            .where(*self._due_lots_filter(now))
            .distinct()
            .order_by(Wallet.user_id)
        )
        return list(result.scalars().all())

    async def expire_promo_credits(self, user_id: int, now: Optional[datetime] = None) -> int:
        """
        Expire the unspent remainder of every promo credit due by ``now``.

        Appends a single DEBIT for the total and returns the amount expired,
        0 when nothing is due (or the user has no wallet).
        """
        now = now or utcnow()

        wallet = await self.wallet_service.find_wallet(user_id, for_update=True)
        if not wallet:
            return 0

        result = await self.db.execute(
            select(WalletCreditLot)
            .where(WalletCreditLot.wallet_id == wallet.id, *self._due_lots_filter(now))
            .order_by(WalletCreditLot.expires_at, WalletCreditLot.id)
            .with_for_update()
        )
        lots = list(result.scalars().all())
        if not lots:
            await self.db.commit()
            return 0

        expired_total = 0
        for lot in lots:
            expired_total += lot.remaining_amount
            lot.remaining_amount = 0

        # Balance never goes below zero even if the cache drifted
        amount = min(expired_total, wallet.balance)
        try:
            if amount > 0:
                await self.wallet_service.append_transaction(
                    wallet,
                    TransactionKind.DEBIT,
                    amount,
                    now=now,
                    description=PROMO_EXPIRY_DESCRIPTION,
                    reference_type=PROMO_EXPIRY_REFERENCE_TYPE,
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if amount != expired_total:
            logger.warning(
                "Expired promo lots exceed cached balance",
                extra_data={
                    "user_id": user_id,
                    "wallet_id": wallet.id,
                    "lot_total": expired_total,
                    "debited": amount,
                },
            )

        logger.info(
            "Promo credits expired",
            extra_data={
                "user_id": user_id,
                "wallet_id": wallet.id,
                "amount": amount,
                "lots": len(lots),
            },
        )
        return amount
