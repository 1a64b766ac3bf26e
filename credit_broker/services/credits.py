"""
Credit Converter - turns provider cost into internal credits.

Margin and credit value are injected at construction so conversions are
deterministic for a given converter instance.
"""

from collections.abc import Mapping
from decimal import ROUND_CEILING, Decimal

from credit_broker.config import Settings
from credit_broker.models.domain import (
    CreditBreakdown,
    CreditConversionConfig,
    CreditQuote,
    ParamValue,
    PricingRule,
)
from credit_broker.services.pricing import default_cost, evaluate


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


class CreditConverter:
    """
    Converts a cost in USD into whole credits.

    credits = ceil(cost * margin / credit_unit_value), never zero for a paid rule.
    """

    def __init__(self, config: CreditConversionConfig) -> None:
        self.config = config

    @classmethod
    def from_settings(cls, settings: Settings) -> "CreditConverter":
        """Build a converter from application settings."""
        return cls(
            CreditConversionConfig(
                profit_margin=settings.profit_margin,
                credit_unit_value=settings.credit_value_usd,
            )
        )

    def to_credits(self, cost: Decimal, rule: PricingRule | None = None) -> CreditQuote:
        """
        Convert one unit's cost to credits.

        When rounding yields zero for a positive cost, fall back to the rule's default
        cost with a floor of one credit so cheap rules never produce free generations.

        Raises:
            ValueError: Negative cost
        """
        if cost < 0:
            raise ValueError(f"Cost cannot be negative: {cost}")

        margin = self.config.profit_margin
        unit_value = self.config.credit_unit_value

        total_cost = cost * margin
        raw_credits = total_cost / unit_value
        credits = _ceil(raw_credits)

        if credits == 0 and cost > 0:
            fallback_cost = default_cost(rule) if rule is not None else Decimal(0)
            credits = max(1, _ceil(fallback_cost * margin / unit_value))

        breakdown = CreditBreakdown(
            cost=cost,
            margin=margin,
            total_cost=total_cost,
            credit_unit_value=unit_value,
            raw_credits=raw_credits,
            rounded_credits=credits,
        )
        return CreditQuote(credits=credits, breakdown=breakdown)

    def quote(
        self,
        rule: PricingRule,
        params: Mapping[str, ParamValue],
        units: int = 1,
    ) -> CreditQuote:
        """
        Price a request of `units` independent outputs.

        Rules are defined per single output, so the per-unit credit result is
        multiplied afterwards rather than feeding `units` into the rule.

        Raises:
            PricingError: Rule cannot be evaluated for params
        """
        if units < 1:
            raise ValueError(f"units must be at least 1: {units}")

        single = self.to_credits(evaluate(rule, params), rule)
        return CreditQuote(
            credits=single.credits * units,
            breakdown=single.breakdown,
            units=units,
        )
