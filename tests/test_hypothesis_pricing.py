"""
Hypothesis Property-Based Tests for pricing, conversion and the ledger.

Tests invariants that must hold for any rule, cost and balance.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from credit_broker.db.models import CreditBalance
from credit_broker.exceptions import InsufficientCreditsError
from credit_broker.models.api import TransactionType
from credit_broker.models.domain import (
    ConditionalPricing,
    ConditionalRule,
    CreditConversionConfig,
    FixedPricing,
)
from credit_broker.services.credits import CreditConverter
from credit_broker.services.ledger import CreditLedger, UserLockRegistry
from credit_broker.services.pricing import evaluate

from conftest import make_ledger_session

# ============================================================================
# Hypothesis Strategies
# ============================================================================

prices = st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=4)
positive_costs = st.decimals(min_value=Decimal("0.0001"), max_value=Decimal("100"), places=4)
margins = st.decimals(min_value=Decimal("1.0"), max_value=Decimal("5.0"), places=2)
unit_values = st.decimals(min_value=Decimal("0.001"), max_value=Decimal("1.0"), places=3)
param_keys = st.sampled_from(["mode", "res", "dur", "audio", "unit_count"])
param_values = st.one_of(
    st.text(max_size=10),
    st.integers(min_value=-100, max_value=100),
    st.booleans(),
)
param_maps = st.dictionaries(param_keys, param_values, max_size=5)
credit_amounts = st.integers(min_value=0, max_value=10_000)


@st.composite
def converters(draw):
    """Generate converters with valid configuration."""
    return CreditConverter(
        CreditConversionConfig(profit_margin=draw(margins), credit_unit_value=draw(unit_values))
    )


@st.composite
def balances(draw):
    """Generate transient balance rows."""
    total = draw(credit_amounts)
    now = datetime.now(UTC)
    return CreditBalance(
        id=uuid4(),
        user_id=uuid4(),
        has_active_package=True,
        package_allowance_total=total,
        package_allowance_used_this_period=draw(st.integers(min_value=0, max_value=total)),
        credits_used_this_period=0,
        generations_this_period=0,
        max_generations_per_period=None,
        account_balance=draw(credit_amounts),
        created_at=now,
        updated_at=now,
    )


# ============================================================================
# Pricing Properties
# ============================================================================


class TestPricingProperties:
    """Properties of rule evaluation."""

    @given(prices, param_maps)
    @settings(max_examples=100)
    def test_fixed_rule_ignores_params(self, price, params):
        assert evaluate(FixedPricing(price=price), params) == price

    @given(param_maps, st.lists(prices, min_size=1, max_size=5))
    @settings(max_examples=100)
    def test_conditional_first_matching_branch_wins(self, params, branch_prices):
        # Every branch conditions on a subset of params, so all of them match
        branches = tuple(
            ConditionalRule(conditions=dict(list(params.items())[:i]), price=p)
            for i, p in enumerate(branch_prices)
        )
        assert evaluate(ConditionalPricing(rules=branches), params) == branch_prices[0]


# ============================================================================
# Conversion Properties
# ============================================================================


class TestConversionProperties:
    """Properties of cost to credit conversion."""

    @given(converters(), prices)
    @settings(max_examples=100)
    def test_credits_never_undercharge(self, converter, cost):
        quote = converter.to_credits(cost)
        assert quote.credits >= quote.breakdown.raw_credits
        assert quote.credits - quote.breakdown.raw_credits < 1

    @given(converters(), positive_costs)
    @settings(max_examples=100)
    def test_paid_rules_are_never_free(self, converter, cost):
        assert converter.to_credits(cost, FixedPricing(price=cost)).credits >= 1

    @given(converters(), prices, st.integers(min_value=1, max_value=8))
    @settings(max_examples=100)
    def test_quote_scales_linearly_with_units(self, converter, price, units):
        rule = FixedPricing(price=price)
        single = converter.quote(rule, {})
        multi = converter.quote(rule, {}, units=units)
        assert multi.credits == single.credits * units
        assert multi.credits_per_unit == single.credits


# ============================================================================
# Ledger Properties
# ============================================================================


class TestLedgerProperties:
    """Properties of reserve and refill against a single balance row."""

    @given(balances(), st.integers(min_value=1, max_value=20_000))
    @settings(max_examples=50)
    @pytest.mark.asyncio
    async def test_reserve_never_overdraws(self, balance, amount):
        ledger = CreditLedger(make_ledger_session(balance), UserLockRegistry())
        before = balance.total_available

        try:
            result = await ledger.reserve(balance.user_id, amount, "test")
        except InsufficientCreditsError as exc:
            assert exc.available == before
            assert balance.total_available == before
        else:
            assert result.remaining_balance == before - amount
            assert balance.total_available == before - amount

        assert balance.account_balance >= 0
        assert balance.package_allowance_used_this_period <= balance.package_allowance_total

    @given(balances(), st.integers(min_value=1, max_value=10_000))
    @settings(max_examples=50)
    @pytest.mark.asyncio
    async def test_refund_restores_total_available(self, balance, amount):
        ledger = CreditLedger(make_ledger_session(balance), UserLockRegistry())
        before = balance.total_available
        credits_used_before = balance.credits_used_this_period

        try:
            await ledger.reserve(balance.user_id, amount, "test")
        except InsufficientCreditsError:
            return

        await ledger.refill(balance.user_id, amount, "refund", TransactionType.REFUND)
        await ledger.release_package_usage(balance.user_id, amount, generations=1)

        assert balance.total_available == before
        assert balance.credits_used_this_period == credits_used_before
        assert balance.generations_this_period == 0
