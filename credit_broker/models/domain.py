"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from credit_broker.models.api import (
    CreditTier,
    GenerationStatus,
    ProviderStatus,
    PredictionPayload,
)

ParamValue = str | int | float | bool
CalculationParams = dict[str, ParamValue]


# ============================================================================
# Pricing Rules (closed union - see services.pricing.evaluate)
# ============================================================================


@dataclass(frozen=True)
class FixedPricing:
    """Flat price per generation."""

    price: Decimal

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"Price cannot be negative: {self.price}")


@dataclass(frozen=True)
class PerUnitPricing:
    """Rate selected by one parameter, multiplied by the unit count (e.g. seconds)."""

    parameter: str
    rates: Mapping[str, Decimal]

    def __post_init__(self) -> None:
        if not self.parameter:
            raise ValueError("parameter cannot be empty")
        for key, rate in self.rates.items():
            if rate < 0:
                raise ValueError(f"Rate for {key!r} cannot be negative: {rate}")


@dataclass(frozen=True)
class ConditionalRule:
    """One branch of a conditional price list."""

    conditions: Mapping[str, ParamValue]
    price: Decimal

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"Price cannot be negative: {self.price}")


@dataclass(frozen=True)
class ConditionalPricing:
    """Ordered branches; the first branch whose conditions all match wins."""

    rules: tuple[ConditionalRule, ...]


PricingRule = FixedPricing | PerUnitPricing | ConditionalPricing


# ============================================================================
# Credit Conversion
# ============================================================================


@dataclass(frozen=True)
class CreditConversionConfig:
    """Margin and credit value injected into the converter."""

    profit_margin: Decimal
    credit_unit_value: Decimal

    def __post_init__(self) -> None:
        if self.profit_margin <= 0:
            raise ValueError(f"Profit margin must be positive: {self.profit_margin}")
        if self.credit_unit_value <= 0:
            raise ValueError(f"Credit unit value must be positive: {self.credit_unit_value}")


@dataclass(frozen=True)
class CreditBreakdown:
    """Audit record of one cost-to-credit conversion."""

    cost: Decimal
    margin: Decimal
    total_cost: Decimal
    credit_unit_value: Decimal
    raw_credits: Decimal
    rounded_credits: int

    def as_audit_dict(self) -> dict[str, str | int]:
        """JSON-safe form stored with the reservation."""
        return {
            "cost": str(self.cost),
            "margin": str(self.margin),
            "total_cost": str(self.total_cost),
            "credit_unit_value": str(self.credit_unit_value),
            "raw_credits": str(self.raw_credits),
            "rounded_credits": self.rounded_credits,
        }


@dataclass(frozen=True)
class CreditQuote:
    """Credits to reserve plus the breakdown that produced them."""

    credits: int
    breakdown: CreditBreakdown
    units: int = 1

    @property
    def credits_per_unit(self) -> int:
        return self.credits // self.units


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class BalanceSnapshot:
    """Immutable two-tier balance state."""

    user_id: UUID
    package_allowance_total: int
    package_allowance_used_this_period: int
    account_balance: int
    credits_used_this_period: int = 0
    generations_this_period: int = 0
    max_generations_per_period: int | None = None
    has_active_package: bool = True

    @property
    def available_package(self) -> int:
        return max(0, self.package_allowance_total - self.package_allowance_used_this_period)

    @property
    def total_available(self) -> int:
        return self.available_package + self.account_balance


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of a successful reservation."""

    user_id: UUID
    amount: int
    tier: CreditTier
    remaining_balance: int
    transaction_id: UUID


@dataclass(frozen=True)
class RefillResult:
    """Outcome of a refill (refund or top-up)."""

    user_id: UUID
    amount: int
    new_balance: int
    transaction_id: UUID


@dataclass(frozen=True)
class PackageLimits:
    """Cheap pre-pricing gate on the user's package."""

    can_generate: bool
    credits_remaining: int
    generations_remaining: int  # -1 means unlimited
    reason: str | None = None


# ============================================================================
# Generations
# ============================================================================


@dataclass(frozen=True)
class GenerationRequest:
    """Validated request to run a generation on behalf of a user."""

    user_id: UUID
    model: str
    model_version: str
    input: dict[str, Any]
    pricing_rule: PricingRule
    num_outputs: int = 1
    session_id: str | None = None
    provider_model: str | None = None  # owner/name on the provider, defaults to model

    def __post_init__(self) -> None:
        if self.num_outputs < 1:
            raise ValueError(f"num_outputs must be at least 1: {self.num_outputs}")
        if not self.model or not self.model_version:
            raise ValueError("model and model_version cannot be empty")


@dataclass(frozen=True)
class GenerationData:
    """Immutable generation snapshot."""

    id: UUID
    user_id: UUID
    session_id: str | None
    external_id: str | None
    model: str
    model_version: str
    status: GenerationStatus
    credits_reserved: int
    input: dict[str, Any]
    output: Any
    error: str | None
    stored_urls: list[str]
    processing_time_seconds: float | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ProviderPrediction:
    """Provider response to a prediction request."""

    id: str
    status: ProviderStatus
    output: Any = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """Verified, parsed provider notification."""

    id: str
    status: ProviderStatus
    model: str
    payload: PredictionPayload
    timestamp: int | None = None
    signature: str | None = None


class ApplyOutcome(str, Enum):
    """What apply_provider_event did with an event."""

    APPLIED = "applied"
    IGNORED_NOT_FOUND = "ignored_not_found"
    IGNORED_TERMINAL = "ignored_terminal"


class WebhookOutcome(str, Enum):
    """What the gateway did with a webhook."""

    SUCCESS = "success"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class UploadResult:
    """One stored asset returned by the storage collaborator."""

    public_url: str
    path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
