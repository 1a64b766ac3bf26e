"""
API Models - Pydantic models for request/response validation.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerationStatus(str, Enum):
    """Internal generation status."""

    PENDING = "pending"
    STARTING = "starting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states accept no further transitions."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})


class ProviderStatus(str, Enum):
    """Prediction status reported by the provider."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


PROVIDER_STATUS_MAP: dict[ProviderStatus, GenerationStatus] = {
    ProviderStatus.STARTING: GenerationStatus.STARTING,
    ProviderStatus.PROCESSING: GenerationStatus.PROCESSING,
    ProviderStatus.SUCCEEDED: GenerationStatus.COMPLETED,
    ProviderStatus.FAILED: GenerationStatus.FAILED,
    ProviderStatus.CANCELED: GenerationStatus.FAILED,
}


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    RESERVATION = "reservation"
    REFUND = "refund"
    TOP_UP = "top_up"
    ADJUSTMENT = "adjustment"


class CreditTier(str, Enum):
    """Which balance component a transaction touched."""

    PACKAGE = "package"
    ACCOUNT = "account"


# ============================================================================
# Provider Prediction Models
# ============================================================================


class PredictionPayload(BaseModel):
    """Prediction body, as sent in webhooks and prediction responses. Extra fields are tolerated."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    status: ProviderStatus
    model: str = ""
    version: str | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    error: str | None = None
    logs: str | None = None
    metrics: dict[str, Any] | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("error", mode="before")
    @classmethod
    def stringify_error(cls, v: Any) -> str | None:
        """Providers sometimes send structured errors."""
        if v is None or isinstance(v, str):
            return v
        return str(v)


class WebhookResponse(BaseModel):
    """Response body for POST /v1/webhooks/provider."""

    status: Literal["success", "ignored", "duplicate"]
    message: str
    prediction_id: str
    processed_at: datetime


# ============================================================================
# Generation Models
# ============================================================================


class EstimatePriceRequest(BaseModel):
    """POST /v1/generations/estimate request body."""

    model: str = Field(..., min_length=1, max_length=255)
    model_version: str = Field(..., min_length=1, max_length=255)
    input: dict[str, Any] = Field(default_factory=dict)
    num_outputs: int = Field(1, ge=1, le=8)


class CreateGenerationRequest(BaseModel):
    """POST /v1/generations request body."""

    user_id: UUID
    model: str = Field(..., min_length=1, max_length=255)
    model_version: str = Field(..., min_length=1, max_length=255)
    input: dict[str, Any] = Field(default_factory=dict)
    num_outputs: int = Field(1, ge=1, le=8)
    session_id: str | None = Field(None, max_length=255)


class CreditBreakdownResponse(BaseModel):
    """Audit breakdown of a credit conversion."""

    cost: str
    margin: str
    total_cost: str
    credit_unit_value: str
    raw_credits: str
    rounded_credits: int


class PriceEstimateResponse(BaseModel):
    """Price estimate for a generation request."""

    model: str
    model_version: str
    estimated_credits: int
    credits_per_output: int
    num_outputs: int
    breakdown: CreditBreakdownResponse


class GenerationResponse(BaseModel):
    """Generation record as returned by the API."""

    id: UUID
    external_id: str | None
    user_id: UUID
    model: str
    model_version: str
    status: GenerationStatus
    credits_reserved: int
    output: Any = None
    error: str | None = None
    stored_urls: list[str] = Field(default_factory=list)
    processing_time_seconds: float | None = None
    created_at: datetime
    updated_at: datetime


class CreateGenerationResponse(BaseModel):
    """Result of a (possibly multi-output) generation request."""

    credits_charged: int
    generations: list[GenerationResponse]


class CreditBalanceResponse(BaseModel):
    """GET /v1/credits/{user_id} response."""

    user_id: UUID
    package_allowance_total: int
    package_allowance_used_this_period: int
    available_package: int
    account_balance: int
    total_available: int
    credits_used_this_period: int
    generations_this_period: int
    max_generations_per_period: int | None


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: datetime
