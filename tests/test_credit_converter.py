"""
Tests for CreditConverter.

Cost to credit conversion, rounding, the minimum-credit fallback and
multi-output quotes.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from credit_broker.exceptions import MissingParameterError
from credit_broker.models.domain import (
    CreditConversionConfig,
    FixedPricing,
    PerUnitPricing,
)
from credit_broker.services.credits import CreditConverter


class TestToCredits:
    """Tests for single-unit conversion."""

    def test_rounds_up(self, converter: CreditConverter):
        quote = converter.to_credits(Decimal("0.08"))

        assert quote.credits == 3
        assert quote.breakdown.raw_credits == Decimal("2.4")
        assert quote.breakdown.total_cost == Decimal("0.12")
        assert quote.breakdown.rounded_credits == 3

    def test_exact_division_not_rounded_up(self, converter: CreditConverter):
        assert converter.to_credits(Decimal("0.1")).credits == 3

    def test_tiny_cost_charges_at_least_one_credit(self, converter: CreditConverter):
        rule = FixedPricing(price=Decimal("0.001"))
        assert converter.to_credits(Decimal("0.001"), rule).credits == 1

    def test_zero_cost_is_free(self, converter: CreditConverter):
        quote = converter.to_credits(Decimal("0"))
        assert quote.credits == 0

    def test_negative_cost_rejected(self, converter: CreditConverter):
        with pytest.raises(ValueError, match="negative"):
            converter.to_credits(Decimal("-0.01"))

    def test_breakdown_records_configuration(self, converter: CreditConverter):
        breakdown = converter.to_credits(Decimal("0.08")).breakdown

        assert breakdown.cost == Decimal("0.08")
        assert breakdown.margin == Decimal("1.5")
        assert breakdown.credit_unit_value == Decimal("0.05")

    def test_audit_dict_is_json_safe(self, converter: CreditConverter):
        audit = converter.to_credits(Decimal("0.08")).breakdown.as_audit_dict()

        assert audit == {
            "cost": "0.08",
            "margin": "1.5",
            "total_cost": "0.120",
            "credit_unit_value": "0.05",
            "raw_credits": "2.4",
            "rounded_credits": 3,
        }

    def test_margin_is_injected(self):
        converter = CreditConverter(
            CreditConversionConfig(profit_margin=Decimal("2"), credit_unit_value=Decimal("0.01"))
        )
        assert converter.to_credits(Decimal("0.08")).credits == 16


class TestQuote:
    """Tests for pricing a rule and scaling by outputs."""

    def test_multiplies_after_rounding(self, converter: CreditConverter):
        quote = converter.quote(FixedPricing(price=Decimal("0.08")), {}, units=3)

        assert quote.credits == 9
        assert quote.credits_per_unit == 3
        assert quote.units == 3

    def test_single_unit_by_default(self, converter: CreditConverter):
        rule = PerUnitPricing(parameter="mode", rates={"standard": Decimal("0.05")})
        quote = converter.quote(rule, {"mode": "standard", "unit_count": 10})

        assert quote.credits == 15
        assert quote.units == 1

    def test_pricing_errors_propagate(self, converter: CreditConverter):
        rule = PerUnitPricing(parameter="mode", rates={"standard": Decimal("0.05")})
        with pytest.raises(MissingParameterError):
            converter.quote(rule, {})

    def test_units_must_be_positive(self, converter: CreditConverter):
        with pytest.raises(ValueError):
            converter.quote(FixedPricing(price=Decimal("1")), {}, units=0)


class TestConfiguration:
    """Tests for converter configuration."""

    @pytest.mark.parametrize(
        ("margin", "unit_value"),
        [(Decimal("0"), Decimal("0.05")), (Decimal("1.5"), Decimal("0")), (Decimal("-1"), Decimal("1"))],
    )
    def test_non_positive_values_rejected(self, margin, unit_value):
        with pytest.raises(ValueError):
            CreditConversionConfig(profit_margin=margin, credit_unit_value=unit_value)

    def test_from_settings(self):
        settings = MagicMock()
        settings.profit_margin = Decimal("2.0")
        settings.credit_value_usd = Decimal("0.10")

        converter = CreditConverter.from_settings(settings)

        assert converter.config.profit_margin == Decimal("2.0")
        assert converter.config.credit_unit_value == Decimal("0.10")
