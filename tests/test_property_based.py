"""
Property-based tests (hypothesis) for the wallet ledger and billing dates.

Invariants:
1. After any sequence of credits, debits and promo expiry runs, the cached
   balance equals the transaction log sum, equals the open lot total, and is
   never negative.
2. Expiry never removes more than was credited as promo.
3. add_months always lands in the right month without overflowing the day.
"""
import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings as h_settings, HealthCheck
from hypothesis.strategies import (
    composite,
    datetimes,
    integers,
    lists,
    one_of,
    sampled_from,
    tuples,
    just,
)

from carebilling.core.dates import add_months
from carebilling.core.exceptions import InsufficientBalanceError
from carebilling.db.models.wallet_transaction import CreditType
from carebilling.domain.services.promo_expiry_service import PromoExpiryService
from carebilling.domain.services.wallet_service import WalletBalance, WalletService

_prop_counter = itertools.count(700000)

START = datetime(2024, 1, 1, 9, 0)

AMOUNTS = integers(min_value=1, max_value=500_000)

LEDGER_OPERATIONS = one_of(
    tuples(just("credit"), sampled_from(list(CreditType)), AMOUNTS),
    tuples(just("debit"), AMOUNTS),
    tuples(just("advance"), integers(min_value=1, max_value=120)),
    tuples(just("expire")),
)


@composite
def ledger_scenario(draw):
    """A credit first, then a random mix of ledger operations"""
    first = ("credit", draw(sampled_from(list(CreditType))), draw(AMOUNTS))
    rest = draw(lists(LEDGER_OPERATIONS, min_size=1, max_size=15))
    return [first] + rest


class TestWalletLedgerProperties:

    @pytest.mark.asyncio
    @given(operations=ledger_scenario())
    @h_settings(
        max_examples=40,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_balance_matches_log_and_lots(self, operations, db_session, user_factory):
        user = await user_factory(phone_number=f"+9188{next(_prop_counter):08d}")
        user_id = user.id
        wallet_service = WalletService(db_session)
        expiry_service = PromoExpiryService(db_session, wallet_service=wallet_service)

        now = START
        promo_credited = 0
        expired = 0
        for operation in operations:
            action = operation[0]
            if action == "credit":
                _, credit_type, amount = operation
                await wallet_service.credit(user_id, amount, credit_type, now=now)
                if credit_type == CreditType.PROMO:
                    promo_credited += amount
            elif action == "debit":
                balance = (await wallet_service.get_balance(user_id)).amount
                try:
                    await wallet_service.debit(user_id, operation[1], now=now)
                except InsufficientBalanceError:
                    assert operation[1] > balance
            elif action == "advance":
                now = now + timedelta(days=operation[1])
            elif action == "expire":
                expired += await expiry_service.expire_promo_credits(user_id, now=now)

            report = await wallet_service.reconcile_balance(user_id)
            assert report.is_consistent, f"drift after {operation}: {report}"
            assert report.cached_balance >= 0

        assert expired <= promo_credited

    @pytest.mark.asyncio
    @given(
        promo=AMOUNTS,
        refund=AMOUNTS,
        spend=AMOUNTS,
    )
    @h_settings(
        max_examples=40,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_spent_promo_is_not_expired_again(self, promo, refund, spend, db_session, user_factory):
        user = await user_factory(phone_number=f"+9177{next(_prop_counter):08d}")
        user_id = user.id
        wallet_service = WalletService(db_session)

        await wallet_service.credit(user_id, promo, CreditType.PROMO, now=START)
        await wallet_service.credit(user_id, refund, CreditType.REFUND, now=START)
        spent = min(spend, promo + refund)
        await wallet_service.debit(user_id, spent, now=START + timedelta(days=1))

        expired = await PromoExpiryService(db_session, wallet_service).expire_promo_credits(
            user_id, now=START + timedelta(days=365)
        )

        # Debits drain the expiring promo lot before the refund lot
        assert expired == max(promo - spent, 0)
        assert (await wallet_service.get_balance(user_id)).amount == promo + refund - spent - expired


class TestMoneyAndDateProperties:

    @pytest.mark.unit
    @given(amount=integers(min_value=0, max_value=10**12))
    @h_settings(max_examples=200, deadline=None)
    def test_display_amount_is_exact(self, amount):
        display = WalletBalance(amount=amount).display_amount

        assert display * 100 == Decimal(amount)
        assert display.as_tuple().exponent == -2

    @pytest.mark.unit
    @given(
        start=datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2090, 12, 31)),
        months=integers(min_value=0, max_value=36),
    )
    @h_settings(max_examples=300, deadline=None)
    def test_add_months_lands_in_target_month(self, start, months):
        result = add_months(start, months)

        assert (result.year * 12 + result.month) - (start.year * 12 + start.month) == months
        assert result.day <= start.day
        assert result.time() == start.time()
        if result.day < start.day:
            # Clamped to the last day of a shorter month
            assert (result + timedelta(days=1)).month != result.month
