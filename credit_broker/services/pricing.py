"""
Pricing Engine - evaluates provider cost rules.

Pure functions, no I/O. Costs are Decimal in the provider's reference currency (USD).
"""

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, assert_never

from credit_broker.exceptions import (
    InvalidUnitsError,
    MissingParameterError,
    NoMatchingRuleError,
    NoRateForValueError,
    PricingError,
)
from credit_broker.models.domain import (
    CalculationParams,
    ConditionalPricing,
    ConditionalRule,
    FixedPricing,
    ParamValue,
    PerUnitPricing,
    PricingRule,
)

UNIT_COUNT_PARAM = "unit_count"
# Older rule sets price video by the second and send the count as "duration"
LEGACY_UNIT_PARAM = "duration"
_UNIT_PARAMS = (UNIT_COUNT_PARAM, LEGACY_UNIT_PARAM)


def evaluate(rule: PricingRule, params: Mapping[str, ParamValue]) -> Decimal:
    """
    Evaluate a pricing rule against calculation parameters.

    Raises:
        MissingParameterError: Per-unit selector parameter absent
        NoRateForValueError: Per-unit rule has no rate for the selected value
        InvalidUnitsError: Unit count is not a non-negative number
        NoMatchingRuleError: No conditional branch matches
    """
    match rule:
        case FixedPricing():
            return rule.price
        case PerUnitPricing():
            return _evaluate_per_unit(rule, params)
        case ConditionalPricing():
            return _evaluate_conditional(rule, params)
        case _:
            assert_never(rule)


def default_cost(rule: PricingRule) -> Decimal:
    """
    Fallback cost when the rule cannot be evaluated from available context.

    Fixed: the price. Per-unit: the first declared rate. Conditional: the first
    branch's price.
    """
    match rule:
        case FixedPricing():
            return rule.price
        case PerUnitPricing():
            return next(iter(rule.rates.values()), Decimal(0))
        case ConditionalPricing():
            return rule.rules[0].price if rule.rules else Decimal(0)
        case _:
            assert_never(rule)


def prepare_params(raw: Mapping[str, Any]) -> CalculationParams:
    """
    Turn generation input into calculation parameters.

    Drops None and non-scalar values (prompts may carry lists of image URLs) and
    coerces numeric strings for the unit-count keys.
    """
    params: CalculationParams = {}
    for key, value in raw.items():
        if value is None or not isinstance(value, (str, int, float, bool)):
            continue
        if key in _UNIT_PARAMS and isinstance(value, str):
            params[key] = _parse_number(value)
        else:
            params[key] = value
    return params


# ============================================================================
# Rule (de)serialization
# ============================================================================


def pricing_rule_from_dict(data: Mapping[str, Any]) -> PricingRule:
    """Build a rule from its stored JSON form."""
    rule_type = data.get("type")
    try:
        if rule_type == "fixed":
            return FixedPricing(price=_decimal(data["price"]))
        if rule_type in ("per_unit", "per_second"):
            return PerUnitPricing(
                parameter=data["parameter"],
                rates={str(k): _decimal(v) for k, v in data["rates"].items()},
            )
        if rule_type == "conditional":
            return ConditionalPricing(
                rules=tuple(
                    ConditionalRule(conditions=dict(r["conditions"]), price=_decimal(r["price"]))
                    for r in data["rules"]
                )
            )
    except (KeyError, TypeError, AttributeError, InvalidOperation, ValueError) as exc:
        raise PricingError(f"Malformed {rule_type} pricing rule: {exc}") from exc
    raise PricingError(f"Unknown pricing rule type: {rule_type!r}")


def pricing_rule_to_dict(rule: PricingRule) -> dict[str, Any]:
    """Serialize a rule to its JSON form."""
    match rule:
        case FixedPricing():
            return {"type": "fixed", "price": str(rule.price)}
        case PerUnitPricing():
            return {
                "type": "per_unit",
                "parameter": rule.parameter,
                "rates": {k: str(v) for k, v in rule.rates.items()},
            }
        case ConditionalPricing():
            return {
                "type": "conditional",
                "rules": [
                    {"conditions": dict(r.conditions), "price": str(r.price)} for r in rule.rules
                ],
            }
        case _:
            assert_never(rule)


# ============================================================================
# Private helpers
# ============================================================================


def _evaluate_per_unit(rule: PerUnitPricing, params: Mapping[str, ParamValue]) -> Decimal:
    if rule.parameter not in params:
        raise MissingParameterError(rule.parameter)

    key = params[rule.parameter]
    rate = rule.rates.get(_rate_key(key))
    if rate is None:
        raise NoRateForValueError(rule.parameter, key)

    return rate * _units(params)


def _evaluate_conditional(rule: ConditionalPricing, params: Mapping[str, ParamValue]) -> Decimal:
    # First match wins; overlapping branches are ordered deliberately by the rule author
    for branch in rule.rules:
        if all(
            name in params and _values_equal(expected, params[name])
            for name, expected in branch.conditions.items()
        ):
            return branch.price
    raise NoMatchingRuleError()


def _units(params: Mapping[str, ParamValue]) -> Decimal:
    if UNIT_COUNT_PARAM in params:
        raw = params[UNIT_COUNT_PARAM]
    else:
        raw = params.get(LEGACY_UNIT_PARAM, 1)

    if isinstance(raw, bool):
        raise InvalidUnitsError(raw)
    try:
        units = _decimal(raw)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidUnitsError(raw) from exc
    if not units.is_finite() or units < 0:
        raise InvalidUnitsError(raw)
    return units


def _rate_key(value: ParamValue) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _values_equal(expected: ParamValue, actual: ParamValue) -> bool:
    """Type-strict equality: True never equals 1 and "6" never equals 6."""
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected == actual
    if isinstance(expected, (int, float)) and isinstance(actual, (int, float)):
        return _decimal(expected) == _decimal(actual)
    return type(expected) is type(actual) and expected == actual


def _decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value.strip())
    return Decimal(value)


def _parse_number(value: str) -> int | float | str:
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return value
