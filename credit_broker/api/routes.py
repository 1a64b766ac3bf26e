"""
API Routes - FastAPI endpoints for generation billing.

All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credit_broker.api.dependencies import (
    get_ledger,
    get_lifecycle,
    get_model_catalog,
    get_webhook_gateway,
    require_service_token,
)
from credit_broker.db.session import get_db
from credit_broker.exceptions import (
    BalanceNotFoundError,
    DataIntegrityError,
    GenerationNotFoundError,
    InsufficientCreditsError,
    PackageLimitExceededError,
    PricingError,
    ProviderClientError,
    ProviderTransientError,
    ValidationError,
    WebhookPayloadError,
    WriteVerificationError,
)
from credit_broker.models.api import (
    CreateGenerationRequest,
    CreateGenerationResponse,
    CreditBalanceResponse,
    CreditBreakdownResponse,
    EstimatePriceRequest,
    GenerationResponse,
    HealthResponse,
    PriceEstimateResponse,
    WebhookResponse,
)
from credit_broker.models.domain import GenerationData, GenerationRequest, WebhookOutcome
from credit_broker.services.collaborators import CatalogEntry, ModelCatalog
from credit_broker.services.ledger import CreditLedger
from credit_broker.services.lifecycle import GenerationLifecycle
from credit_broker.services.webhooks import WebhookGateway

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "webhook-signature"
TIMESTAMP_HEADER = "webhook-timestamp"

_WEBHOOK_MESSAGES = {
    WebhookOutcome.SUCCESS: "Webhook processed successfully",
    WebhookOutcome.IGNORED: "Event ignored",
    WebhookOutcome.DUPLICATE: "Duplicate event ignored",
}


def _catalog_entry(catalog: ModelCatalog, model: str, model_version: str) -> CatalogEntry:
    entry = catalog.get(model, model_version)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Model version '{model_version}' is not available for model '{model}'",
        )
    return entry


def _generation_response(generation: GenerationData) -> GenerationResponse:
    return GenerationResponse(
        id=generation.id,
        external_id=generation.external_id,
        user_id=generation.user_id,
        model=generation.model,
        model_version=generation.model_version,
        status=generation.status,
        credits_reserved=generation.credits_reserved,
        output=generation.output,
        error=generation.error,
        stored_urls=generation.stored_urls,
        processing_time_seconds=generation.processing_time_seconds,
        created_at=generation.created_at,
        updated_at=generation.updated_at,
    )


# ============================================================================
# Generations
# ============================================================================


@router.post("/v1/generations/estimate", response_model=PriceEstimateResponse)
async def estimate_generation_price(
    request: EstimatePriceRequest,
    lifecycle: GenerationLifecycle = Depends(get_lifecycle),
    catalog: ModelCatalog = Depends(get_model_catalog),
    _: None = Depends(require_service_token),
) -> PriceEstimateResponse:
    """Price a generation request without reserving anything."""
    entry = _catalog_entry(catalog, request.model, request.model_version)

    try:
        quote = lifecycle.estimate_price(entry.pricing_rule, request.input, request.num_outputs)
    except PricingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return PriceEstimateResponse(
        model=request.model,
        model_version=request.model_version,
        estimated_credits=quote.credits,
        credits_per_output=quote.credits_per_unit,
        num_outputs=quote.units,
        breakdown=CreditBreakdownResponse(**quote.breakdown.as_audit_dict()),
    )


@router.post(
    "/v1/generations",
    response_model=CreateGenerationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_generation(
    request: CreateGenerationRequest,
    lifecycle: GenerationLifecycle = Depends(get_lifecycle),
    catalog: ModelCatalog = Depends(get_model_catalog),
    _: None = Depends(require_service_token),
) -> CreateGenerationResponse:
    """
    Reserve credits and submit the generation to the provider.

    Credits are kept if the provider rejects the request after reservation.
    """
    entry = _catalog_entry(catalog, request.model, request.model_version)

    generation_request = GenerationRequest(
        user_id=request.user_id,
        model=request.model,
        model_version=request.model_version,
        input=request.input,
        pricing_rule=entry.pricing_rule,
        num_outputs=request.num_outputs,
        session_id=request.session_id,
        provider_model=entry.provider_model,
    )

    try:
        generations = await lifecycle.create(generation_request)

    except PricingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    except PackageLimitExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=exc.reason,
        ) from exc

    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Required: {exc.required}, Available: {exc.available}",
        ) from exc

    except BalanceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit balance not found",
        ) from exc

    except ProviderClientError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Provider rejected the request: {exc.message}",
        ) from exc

    except ProviderTransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider temporarily unavailable",
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return CreateGenerationResponse(
        credits_charged=sum(g.credits_reserved for g in generations if g.refunded_at is None),
        generations=[_generation_response(g) for g in generations],
    )


@router.get("/v1/generations/{external_id}", response_model=GenerationResponse)
async def get_generation(
    external_id: str,
    lifecycle: GenerationLifecycle = Depends(get_lifecycle),
    _: None = Depends(require_service_token),
) -> GenerationResponse:
    """Get a generation by provider prediction id."""
    try:
        generation = await lifecycle.get_generation(external_id)
    except GenerationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Generation not found",
        ) from exc
    return _generation_response(generation)


# ============================================================================
# Credits
# ============================================================================


@router.get("/v1/credits/{user_id}", response_model=CreditBalanceResponse)
async def get_credit_balance(
    user_id: UUID,
    ledger: CreditLedger = Depends(get_ledger),
    _: None = Depends(require_service_token),
) -> CreditBalanceResponse:
    """Get a user's two-tier credit balance."""
    try:
        balance = await ledger.get_balance(user_id)
    except BalanceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit balance not found",
        ) from exc

    return CreditBalanceResponse(
        user_id=balance.user_id,
        package_allowance_total=balance.package_allowance_total,
        package_allowance_used_this_period=balance.package_allowance_used_this_period,
        available_package=balance.available_package,
        account_balance=balance.account_balance,
        total_available=balance.total_available,
        credits_used_this_period=balance.credits_used_this_period,
        generations_this_period=balance.generations_this_period,
        max_generations_per_period=balance.max_generations_per_period,
    )


# ============================================================================
# Provider Webhooks
# ============================================================================


@router.post("/v1/webhooks/provider", response_model=WebhookResponse)
async def provider_webhook(
    request: Request,
    gateway: WebhookGateway = Depends(get_webhook_gateway),
) -> WebhookResponse:
    """
    Handle provider prediction notifications.

    200 for processed, ignored and duplicate events; 400 when the signature or
    body is invalid; 500 once every processing attempt has failed.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    timestamp = request.headers.get(TIMESTAMP_HEADER, "")

    if not gateway.verify(payload, signature, timestamp):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    try:
        event = gateway.parse_event(payload, signature, timestamp)
    except WebhookPayloadError as exc:
        logger.warning("webhook_payload_invalid", error=exc.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    logger.info(
        "provider_webhook_received",
        prediction_id=event.id,
        status=event.status.value,
        model=event.model,
    )

    try:
        outcome = await gateway.handle(event)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("provider_webhook_failed", prediction_id=event.id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookResponse(
        status=outcome.value,
        message=_WEBHOOK_MESSAGES[outcome],
        prediction_id=event.id,
        processed_at=datetime.now(UTC),
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC),
    )
