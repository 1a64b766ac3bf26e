"""
Collaborator interfaces - storage, notifications and the model catalog.

Provider-agnostic: the lifecycle only depends on these protocols. Default
implementations are intentionally minimal.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from structlog import get_logger

from credit_broker.models.domain import PricingRule, UploadResult
from credit_broker.services.pricing import pricing_rule_from_dict

logger = get_logger(__name__)


# ============================================================================
# Notification Events
# ============================================================================


@dataclass(frozen=True)
class GenerationProgressEvent:
    """Provider reported the generation is starting or processing."""

    generation_id: UUID
    external_id: str
    user_id: UUID
    model: str
    model_version: str
    session_id: str | None
    status: str
    started_at: str | None = None


@dataclass(frozen=True)
class GenerationCompletedEvent:
    """Generation reached completed."""

    generation_id: UUID
    external_id: str
    user_id: UUID
    model: str
    model_version: str
    session_id: str | None
    media_urls: list[str] = field(default_factory=list)
    processing_time_seconds: float | None = None
    credits_used: int | None = None


@dataclass(frozen=True)
class GenerationFailedEvent:
    """Generation reached failed."""

    generation_id: UUID
    external_id: str
    user_id: UUID
    model: str
    model_version: str
    session_id: str | None
    error: str
    credits_used: int | None = None


@dataclass(frozen=True)
class CreditRefundEvent:
    """Credits were returned to the user's account."""

    user_id: UUID
    credits_refunded: int
    reason: str
    generation_id: UUID | None = None


NotificationEvent = (
    GenerationProgressEvent | GenerationCompletedEvent | GenerationFailedEvent | CreditRefundEvent
)


class NotificationSink(Protocol):
    """
    Outbound notification channel.

    publish() is fire-and-forget: it must not block and its failures never
    affect generation or ledger state.
    """

    def publish(self, event: NotificationEvent) -> None:
        """Hand an event to the delivery channel."""
        ...


class LoggingNotificationSink:
    """Writes every event to the structured log."""

    def publish(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_published",
            event_type=type(event).__name__,
            user_id=str(event.user_id),
            generation_id=str(event.generation_id) if event.generation_id else None,
        )


# ============================================================================
# Storage
# ============================================================================


@dataclass(frozen=True)
class UploadOptions:
    """Where and how provider media is persisted."""

    user_id: UUID
    session_id: str | None = None
    folder: str = "generations"
    file_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class StorageUploader(Protocol):
    """Copies provider-hosted media into durable storage."""

    async def upload_many(
        self, urls: list[str], options: UploadOptions
    ) -> list[UploadResult]:
        """
        Upload every URL. Implementations may skip individual failures but
        raise when nothing could be stored.
        """
        ...


class NullStorageUploader:
    """Stores nothing; provider URLs remain the only copy."""

    async def upload_many(
        self, urls: list[str], options: UploadOptions
    ) -> list[UploadResult]:
        logger.debug("storage_upload_skipped", url_count=len(urls), user_id=str(options.user_id))
        return []


# ============================================================================
# Model Catalog
# ============================================================================


@dataclass(frozen=True)
class CatalogEntry:
    """A sellable model version with its provider mapping and cost rule."""

    model: str
    model_version: str
    provider_model: str  # owner/name on the provider
    pricing_rule: PricingRule


class ModelCatalog(Protocol):
    """Looks up the provider mapping and pricing for a model version."""

    def get(self, model: str, model_version: str) -> CatalogEntry | None:
        ...


class StaticModelCatalog:
    """In-memory catalog, usually loaded from settings."""

    def __init__(self, entries: Iterable[CatalogEntry] = ()) -> None:
        self._entries = {(e.model, e.model_version): e for e in entries}

    @classmethod
    def from_config(cls, raw_entries: Iterable[Mapping[str, Any]]) -> "StaticModelCatalog":
        """
        Build from JSON-style entries:
        {"model", "model_version", "provider_model", "pricing": {...}}

        Raises:
            PricingError: An entry's pricing rule is malformed
        """
        entries = [
            CatalogEntry(
                model=raw["model"],
                model_version=raw["model_version"],
                provider_model=raw["provider_model"],
                pricing_rule=pricing_rule_from_dict(raw["pricing"]),
            )
            for raw in raw_entries
        ]
        return cls(entries)

    def get(self, model: str, model_version: str) -> CatalogEntry | None:
        return self._entries.get((model, model_version))

    def __len__(self) -> int:
        return len(self._entries)
