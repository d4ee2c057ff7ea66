"""
Tests for CheckoutService - wallet-first allocation preview and commit.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select, func

from carebilling.core.exceptions import InsufficientBalanceError, InvalidAmountError
from carebilling.db.models.wallet_transaction import CreditType, WalletTransaction
from carebilling.domain.services.checkout_service import CheckoutService
from carebilling.domain.services.wallet_service import WalletService


async def _funded_user(user_factory, db_session, balance: int):
    user = await user_factory()
    if balance:
        await WalletService(db_session).credit(user.id, balance, CreditType.REFUND)
    return user


@pytest.mark.unit
async def test_partial_wallet_coverage(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 30000)

    allocation = await CheckoutService(db_session).apply_wallet_at_checkout(user.id, 99900, True)

    assert allocation.wallet_amount_used == 30000
    assert allocation.remaining_amount == 69900
    assert allocation.wallet_fully_covered is False


@pytest.mark.unit
async def test_full_wallet_coverage(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 150000)

    allocation = await CheckoutService(db_session).apply_wallet_at_checkout(user.id, 99900, True)

    assert allocation.wallet_amount_used == 99900
    assert allocation.remaining_amount == 0
    assert allocation.wallet_fully_covered is True


@pytest.mark.unit
async def test_preview_never_debits(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 150000)

    await CheckoutService(db_session).apply_wallet_at_checkout(user.id, 99900, True)

    assert (await WalletService(db_session).get_balance(user.id)).amount == 150000
    result = await db_session.execute(select(func.count(WalletTransaction.id)))
    assert result.scalar_one() == 1


@pytest.mark.unit
async def test_wallet_not_used(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 150000)

    allocation = await CheckoutService(db_session).apply_wallet_at_checkout(user.id, 99900, False)

    assert allocation.wallet_amount_used == 0
    assert allocation.remaining_amount == 99900
    assert allocation.wallet_fully_covered is False


@pytest.mark.unit
async def test_empty_wallet_routes_everything_to_gateway(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 0)

    allocation = await CheckoutService(db_session).apply_wallet_at_checkout(user.id, 49900, True)

    assert allocation.wallet_amount_used == 0
    assert allocation.remaining_amount == 49900


@pytest.mark.unit
async def test_negative_total_rejected(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 0)

    with pytest.raises(InvalidAmountError):
        await CheckoutService(db_session).apply_wallet_at_checkout(user.id, -1, True)


@pytest.mark.unit
async def test_commit_wallet_portion_debits_allocated_amount(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 30000)
    service = CheckoutService(db_session)
    allocation = await service.apply_wallet_at_checkout(user.id, 99900, True)

    transaction = await service.commit_wallet_portion(user.id, allocation, reference_id="order-77")

    assert transaction.amount == 30000
    assert transaction.reference_id == "order-77"
    assert (await WalletService(db_session).get_balance(user.id)).amount == 0


@pytest.mark.unit
async def test_commit_wallet_portion_is_noop_without_wallet_share(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 30000)
    service = CheckoutService(db_session)
    allocation = await service.apply_wallet_at_checkout(user.id, 99900, False)

    assert await service.commit_wallet_portion(user.id, allocation) is None
    assert (await WalletService(db_session).get_balance(user.id)).amount == 30000


@pytest.mark.unit
async def test_commit_fails_when_balance_shrank_after_preview(user_factory, db_session):
    user = await _funded_user(user_factory, db_session, 30000)
    user_id = user.id
    service = CheckoutService(db_session)
    allocation = await service.apply_wallet_at_checkout(user_id, 99900, True)
    await WalletService(db_session).debit(user_id, 10000)

    with pytest.raises(InsufficientBalanceError):
        await service.commit_wallet_portion(user_id, allocation)

    assert (await WalletService(db_session).get_balance(user_id)).amount == 20000
