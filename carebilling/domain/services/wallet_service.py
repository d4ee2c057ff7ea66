"""
Wallet Service - per-user wallet ledger

Every mutation is one DB transaction: lock the wallet row, compute the new
balance, write the wallet, append the transaction (and its credit lot). The
transaction log is the source of truth; ``Wallet.balance`` is a cached
projection that reconcile_balance() can verify and repair.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from carebilling.core.config import settings
from carebilling.core.dates import utcnow
from carebilling.core.exceptions import (
    ErrorCode,
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundException,
    ValidationException,
)
from carebilling.core.logging import get_logger
from carebilling.db.models.wallet import Wallet
from carebilling.db.models.wallet_credit_lot import WalletCreditLot
from carebilling.db.models.wallet_transaction import CreditType, TransactionKind, WalletTransaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class WalletBalance:
    amount: int

    @property
    def display_amount(self) -> Decimal:
        """Major units, exact (12345 -> Decimal('123.45'))"""
        return Decimal(self.amount).scaleb(-2)


@dataclass(frozen=True)
class ReconciliationReport:
    user_id: int
    wallet_id: int
    cached_balance: int
    ledger_balance: int
    lot_balance: int
    mismatched_transaction_ids: list[int] = field(default_factory=list)
    repaired: bool = False

    @property
    def drift(self) -> int:
        return self.cached_balance - self.ledger_balance

    @property
    def is_consistent(self) -> bool:
        return (
            self.drift == 0
            and self.lot_balance == self.ledger_balance
            and not self.mismatched_transaction_ids
        )


def _validate_amount(amount: int, user_id: int) -> None:
    # bool is an int subclass; True must not pass as 1 paisa
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmountError(amount, user_id=user_id)


class WalletService:
    """Service for managing user wallets"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_wallet(self, user_id: int, for_update: bool = False) -> Optional[Wallet]:
        query = select(Wallet).where(Wallet.user_id == user_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_create_wallet(self, user_id: int, for_update: bool = False) -> Wallet:
        """Get existing wallet or create a zero-balance one.

        With ``for_update`` the row is locked and creation rides along with the
        caller's transaction; without it a new wallet is committed right away.
        Concurrent creation is resolved by savepoint + IntegrityError fallback.
        """
        wallet = await self.find_wallet(user_id, for_update=for_update)
        if wallet:
            return wallet

        try:
            async with self.db.begin_nested():
                wallet = Wallet(user_id=user_id, balance=0)
                self.db.add(wallet)
        except IntegrityError:
            logger.info(
                "Wallet created concurrently, re-reading",
                extra_data={"user_id": user_id},
            )
            wallet = await self.find_wallet(user_id, for_update=for_update)
            if not wallet:
                raise
            return wallet

        if not for_update:
            await self.db.commit()

        logger.info("Wallet created", extra_data={"user_id": user_id, "wallet_id": wallet.id})
        return wallet

    async def get_balance(self, user_id: int) -> WalletBalance:
        """Current balance; 0 when the user has no wallet yet"""
        wallet = await self.find_wallet(user_id)
        return WalletBalance(amount=wallet.balance if wallet else 0)

    async def _finish(self, auto_commit: bool) -> None:
        if auto_commit:
            await self.db.commit()
        else:
            await self.db.flush()

    async def _abort(self, auto_commit: bool) -> None:
        # Release the row lock; a caller-managed transaction is left to the caller
        if auto_commit:
            await self.db.rollback()

    async def append_transaction(
        self,
        wallet: Wallet,
        kind: TransactionKind,
        amount: int,
        *,
        now: datetime,
        credit_type: Optional[CreditType] = None,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        refund_trigger: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> WalletTransaction:
        """Apply ``amount`` to the cached balance and append the matching row.

        The caller must hold the wallet row lock (get_or_create_wallet with
        for_update=True) and must have validated the amount.
        """
        new_balance = wallet.balance + amount if kind == TransactionKind.CREDIT else wallet.balance - amount
        if new_balance < 0:
            raise InsufficientBalanceError(wallet.user_id, wallet.balance, amount)

        wallet.balance = new_balance
        transaction = WalletTransaction(
            wallet_id=wallet.id,
            kind=kind,
            credit_type=credit_type,
            amount=amount,
            balance_after=new_balance,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            refund_trigger=refund_trigger,
            expires_at=expires_at,
            created_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()
        return transaction

    async def credit(
        self,
        user_id: int,
        amount: int,
        credit_type: CreditType | str,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        refund_trigger: Optional[str] = None,
        auto_commit: bool = True,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """
        Credit the wallet.

        PROMO credits expire PROMO_EXPIRY_DAYS after ``now``; REFUND and
        COMEBACK credits never expire.

        Args:
            auto_commit: False when the caller manages the transaction
                (refund completion writes the refund row in the same unit).
        """
        _validate_amount(amount, user_id)
        try:
            credit_type = CreditType(credit_type)
        except ValueError:
            raise ValidationException(f"Unknown credit type: {credit_type}", field="credit_type")

        now = now or utcnow()
        expires_at = now + timedelta(days=settings.PROMO_EXPIRY_DAYS) if credit_type == CreditType.PROMO else None

        wallet = await self.get_or_create_wallet(user_id, for_update=True)
        transaction = await self.append_transaction(
            wallet,
            TransactionKind.CREDIT,
            amount,
            now=now,
            credit_type=credit_type,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            refund_trigger=refund_trigger,
            expires_at=expires_at,
        )
        self.db.add(
            WalletCreditLot(
                wallet_id=wallet.id,
                transaction_id=transaction.id,
                credit_type=credit_type,
                original_amount=amount,
                remaining_amount=amount,
                expires_at=expires_at,
                created_at=now,
            )
        )
        await self._finish(auto_commit)

        logger.info(
            "Wallet credited",
            extra_data={
                "user_id": user_id,
                "wallet_id": wallet.id,
                "amount": amount,
                "credit_type": credit_type.value,
                "balance_after": transaction.balance_after,
                "reference_id": reference_id,
            },
        )
        return transaction

    async def debit(
        self,
        user_id: int,
        amount: int,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        auto_commit: bool = True,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """Debit the wallet, consuming credit lots nearest-expiry-first."""
        _validate_amount(amount, user_id)
        now = now or utcnow()

        wallet = await self.get_or_create_wallet(user_id, for_update=True)
        if amount > wallet.balance:
            current_balance = wallet.balance
            await self._abort(auto_commit)
            raise InsufficientBalanceError(user_id, current_balance, amount)

        await self._consume_lots(wallet, amount)
        transaction = await self.append_transaction(
            wallet,
            TransactionKind.DEBIT,
            amount,
            now=now,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
        )
        await self._finish(auto_commit)

        logger.info(
            "Wallet debited",
            extra_data={
                "user_id": user_id,
                "wallet_id": wallet.id,
                "amount": amount,
                "balance_after": transaction.balance_after,
                "reference_id": reference_id,
            },
        )
        return transaction

    # Caller-facing names
    credit_wallet = credit
    debit_wallet = debit

    async def _consume_lots(self, wallet: Wallet, amount: int) -> None:
        """Draw ``amount`` from the wallet's open lots.

        Order: lots with an expiry (earliest first), then non-expiring lots
        oldest first.
        """
        result = await self.db.execute(
            select(WalletCreditLot)
            .where(
                WalletCreditLot.wallet_id == wallet.id,
                WalletCreditLot.remaining_amount > 0,
            )
            .order_by(
                case((WalletCreditLot.expires_at.is_(None), 1), else_=0),
                WalletCreditLot.expires_at,
                WalletCreditLot.created_at,
                WalletCreditLot.id,
            )
            .with_for_update()
        )
        outstanding = amount
        for lot in result.scalars().all():
            if outstanding == 0:
                break
            taken = min(lot.remaining_amount, outstanding)
            lot.remaining_amount -= taken
            outstanding -= taken

        if outstanding:
            logger.warning(
                "Wallet lots do not cover the cached balance",
                extra_data={"wallet_id": wallet.id, "uncovered_amount": outstanding},
            )

    async def get_transaction_history(
        self,
        user_id: int,
        limit: Optional[int] = None,
    ) -> list[WalletTransaction]:
        """Transactions newest first; empty when the user has no wallet"""
        wallet = await self.find_wallet(user_id)
        if not wallet:
            return []

        query = (
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def reconcile_balance(self, user_id: int, repair: bool = False) -> ReconciliationReport:
        """
        Recompute the balance from the transaction log.

        Checks every ``balance_after`` against the running sum (in append
        order) and compares the result with the cached balance and the open
        lots. With ``repair`` the cached balance is rewritten from the log.
        """
        wallet = await self.find_wallet(user_id, for_update=repair)
        if not wallet:
            raise NotFoundException("Wallet", user_id, error_code=ErrorCode.WALLET_NOT_FOUND)

        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.id)
            .order_by(WalletTransaction.id)
        )
        running = 0
        mismatched: list[int] = []
        for transaction in result.scalars().all():
            running += transaction.signed_amount
            if transaction.balance_after != running:
                mismatched.append(transaction.id)

        lots = await self.db.execute(
            select(WalletCreditLot.remaining_amount).where(WalletCreditLot.wallet_id == wallet.id)
        )
        lot_balance = sum(lots.scalars().all())

        cached = wallet.balance
        repaired = False
        if repair and cached != running and running >= 0:
            wallet.balance = running
            await self.db.commit()
            repaired = True
        elif repair:
            # Nothing to rewrite; release the row lock
            await self.db.commit()

        report = ReconciliationReport(
            user_id=user_id,
            wallet_id=wallet.id,
            cached_balance=cached,
            ledger_balance=running,
            lot_balance=lot_balance,
            mismatched_transaction_ids=mismatched,
            repaired=repaired,
        )
        if not report.is_consistent:
            logger.warning(
                "Wallet drift detected",
                extra_data={
                    "user_id": user_id,
                    "wallet_id": wallet.id,
                    "cached_balance": cached,
                    "ledger_balance": running,
                    "lot_balance": lot_balance,
                    "mismatched_transactions": len(mismatched),
                    "repaired": repaired,
                },
            )
        return report

    async def list_wallet_user_ids(self) -> list[int]:
        result = await self.db.execute(select(Wallet.user_id).order_by(Wallet.user_id))
        return list(result.scalars().all())
