"""
FastAPI Dependencies - service wiring and authentication.
"""

import hmac

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credit_broker.config import settings
from credit_broker.db.session import get_db
from credit_broker.services.collaborators import (
    LoggingNotificationSink,
    ModelCatalog,
    NotificationSink,
    NullStorageUploader,
    StaticModelCatalog,
    StorageUploader,
)
from credit_broker.services.credits import CreditConverter
from credit_broker.services.ledger import CreditLedger
from credit_broker.services.lifecycle import GenerationLifecycle, PartialFanoutPolicy
from credit_broker.services.provider import ProviderClient
from credit_broker.services.webhooks import WebhookGateway

logger = get_logger(__name__)

# Process-wide collaborators, created lazily
_provider_client: ProviderClient | None = None
_model_catalog: StaticModelCatalog | None = None
_notifier: NotificationSink = LoggingNotificationSink()
_storage: StorageUploader = NullStorageUploader()


# ============================================================================
# Authentication
# ============================================================================


async def require_service_token(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> None:
    """Reject client calls without the shared service token."""
    if not settings.service_api_token:
        logger.error("service_token_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service authentication not configured",
        )

    if not x_api_key or not hmac.compare_digest(
        x_api_key.encode("utf-8"), settings.service_api_token.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


# ============================================================================
# Collaborators
# ============================================================================


def get_provider_client() -> ProviderClient:
    """Shared provider client (one connection pool per process)."""
    global _provider_client
    if _provider_client is None:
        _provider_client = ProviderClient(
            api_token=settings.provider_api_token,
            base_url=settings.provider_base_url,
            webhook_url=settings.provider_webhook_url,
            sync_timeout=settings.sync_timeout_seconds,
            async_timeout=settings.async_timeout_seconds,
        )
    return _provider_client


async def close_provider_client() -> None:
    """Close the shared provider client (for graceful shutdown)."""
    global _provider_client
    if _provider_client is not None:
        await _provider_client.close()
        _provider_client = None


def get_model_catalog() -> ModelCatalog:
    """Catalog loaded once from settings."""
    global _model_catalog
    if _model_catalog is None:
        _model_catalog = StaticModelCatalog.from_config(settings.model_catalog)
        logger.info("model_catalog_loaded", entries=len(_model_catalog))
    return _model_catalog


def get_notifier() -> NotificationSink:
    return _notifier


def get_storage() -> StorageUploader:
    return _storage


def get_converter() -> CreditConverter:
    return CreditConverter.from_settings(settings)


# ============================================================================
# Services (request scoped, sharing the request's session)
# ============================================================================


def get_ledger(db: AsyncSession = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db)


def get_lifecycle(
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
    converter: CreditConverter = Depends(get_converter),
    provider: ProviderClient = Depends(get_provider_client),
    notifier: NotificationSink = Depends(get_notifier),
    storage: StorageUploader = Depends(get_storage),
) -> GenerationLifecycle:
    return GenerationLifecycle(
        session=db,
        ledger=ledger,
        converter=converter,
        provider=provider,
        notifier=notifier,
        storage=storage,
        synchronous_models=settings.synchronous_models,
        fanout_concurrency=settings.fanout_concurrency,
        partial_fanout_policy=PartialFanoutPolicy(settings.partial_fanout_policy),
    )


def get_webhook_gateway(
    lifecycle: GenerationLifecycle = Depends(get_lifecycle),
) -> WebhookGateway:
    return WebhookGateway(
        lifecycle=lifecycle,
        secret=settings.webhook_secret,
        monitored_models=settings.monitored_models,
        max_attempts=settings.webhook_max_attempts,
        retry_delays=settings.webhook_retry_delays,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
