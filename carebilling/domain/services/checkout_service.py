"""
Checkout Service - wallet-first fund allocation

apply_wallet_at_checkout() is a preview and never touches the ledger. The
checkout flow calls commit_wallet_portion() only after the gateway leg for
the remainder has succeeded.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from carebilling.core.exceptions import InvalidAmountError
from carebilling.core.logging import get_logger
from carebilling.db.models.wallet_transaction import WalletTransaction
from carebilling.domain.services.wallet_service import WalletService

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckoutAllocation:
    user_id: int
    total_amount: int
    wallet_amount_used: int
    remaining_amount: int
    wallet_fully_covered: bool


class CheckoutService:

    def __init__(self, db: AsyncSession, wallet_service: Optional[WalletService] = None):
        self.db = db
        self.wallet_service = wallet_service or WalletService(db)

    async def apply_wallet_at_checkout(
        self,
        user_id: int,
        total_amount: int,
        use_wallet: bool,
    ) -> CheckoutAllocation:
        if not isinstance(total_amount, int) or isinstance(total_amount, bool) or total_amount < 0:
            raise InvalidAmountError(total_amount, user_id=user_id)

        if not use_wallet:
            return CheckoutAllocation(user_id, total_amount, 0, total_amount, False)

        balance = await self.wallet_service.get_balance(user_id)
        used = min(balance.amount, total_amount)
        remaining = total_amount - used
        return CheckoutAllocation(
            user_id=user_id,
            total_amount=total_amount,
            wallet_amount_used=used,
            remaining_amount=remaining,
            wallet_fully_covered=remaining == 0,
        )

    async def commit_wallet_portion(
        self,
        user_id: int,
        allocation: CheckoutAllocation,
        reference_id: Optional[str] = None,
    ) -> Optional[WalletTransaction]:
        """
        Debit the wallet share of a previewed allocation.

        The balance is re-checked under the wallet lock; if it shrank since the
        preview an InsufficientBalanceError is raised and nothing is written.
        """
        if allocation.wallet_amount_used == 0:
            return None

        transaction = await self.wallet_service.debit(
            user_id,
            allocation.wallet_amount_used,
            description="Checkout payment",
            reference_id=reference_id,
            reference_type="CHECKOUT",
        )
        logger.info(
            "Checkout wallet portion committed",
            extra_data={
                "user_id": user_id,
                "amount": allocation.wallet_amount_used,
                "remaining_amount": allocation.remaining_amount,
                "reference_id": reference_id,
            },
        )
        return transaction
