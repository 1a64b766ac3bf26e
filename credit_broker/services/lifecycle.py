"""
Generation Lifecycle - reservation, provider submission and reconciliation.

pending -> {starting, processing} -> {completed, failed}

Status writes are conditional updates guarded on the current status not being
terminal, so duplicate and out-of-order provider events are no-ops.
"""

import asyncio
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credit_broker.db.models import Generation
from credit_broker.exceptions import (
    DuplicateEventError,
    GenerationNotFoundError,
    PackageLimitExceededError,
)
from credit_broker.models.api import (
    PROVIDER_STATUS_MAP,
    TERMINAL_STATUSES,
    GenerationStatus,
    PredictionPayload,
    TransactionType,
)
from credit_broker.models.domain import (
    ApplyOutcome,
    CreditQuote,
    GenerationData,
    GenerationRequest,
    PricingRule,
    ProviderPrediction,
    WebhookEvent,
)
from credit_broker.observability.logging import log_context
from credit_broker.observability.metrics import metrics
from credit_broker.observability.tracing import trace_operation
from credit_broker.services.collaborators import (
    CreditRefundEvent,
    GenerationCompletedEvent,
    GenerationFailedEvent,
    GenerationProgressEvent,
    LoggingNotificationSink,
    NotificationEvent,
    NotificationSink,
    NullStorageUploader,
    StorageUploader,
    UploadOptions,
)
from credit_broker.services.credits import CreditConverter
from credit_broker.services.ledger import NO_PACKAGE_REASON, CreditLedger
from credit_broker.services.pricing import prepare_params
from credit_broker.services.provider import ProviderClient

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Generation failed"
LOGS_TRUNCATED = "[LOGS_TRUNCATED]"
MEDIA_EXTENSIONS = (".mp4", ".mov", ".avi", ".webm", ".m4v", ".png", ".jpg", ".jpeg", ".webp")
DELIVERY_MARKERS = ("replicate.delivery", "replicate-delivery")
API_URL_MARKERS = ("api.replicate.com", "/cancel", "/stream")

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


class PartialFanoutPolicy(str, Enum):
    """What to charge when only some outputs of a multi-output request were accepted."""

    CHARGE_ALL = "charge_all"
    CHARGE_SUCCEEDED = "charge_succeeded"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Provider output helpers
# ============================================================================


def is_media_url(url: str) -> bool:
    """Provider-hosted media file, as opposed to an API URL."""
    if not url.startswith(("http://", "https://")):
        return False
    if any(marker in url for marker in API_URL_MARKERS):
        return False
    lowered = url.lower()
    return any(ext in lowered for ext in MEDIA_EXTENSIONS) or any(
        marker in url for marker in DELIVERY_MARKERS
    )


def extract_media_urls(output: Any) -> list[str]:
    """Media URLs from a prediction output (a URL string or a list of them)."""
    if isinstance(output, str):
        return [output] if is_media_url(output) else []
    if isinstance(output, list):
        return [item for item in output if isinstance(item, str) and is_media_url(item)]
    return []


def clean_output(payload: PredictionPayload) -> dict[str, Any]:
    """Prediction summary kept for auditing. Logs are dropped, only flagged."""
    summary = payload.model_dump(
        mode="json",
        include={
            "id",
            "model",
            "version",
            "status",
            "output",
            "created_at",
            "started_at",
            "completed_at",
            "metrics",
        },
    )
    summary["logs_available"] = bool(payload.logs)
    return summary


def processing_seconds(started: datetime, finished: datetime) -> float:
    """Elapsed seconds rounded to 2 decimal places, never negative."""
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    if finished.tzinfo is None:
        finished = finished.replace(tzinfo=UTC)
    return max(0.0, round((finished - started).total_seconds(), 2))


class GenerationLifecycle:
    """
    Drives a generation from reservation to a terminal state.

    Provider failures after a successful reservation keep the credits. Credits
    are returned only when the provider reports failure (or webhook processing
    gives up), and at most once per generation.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: CreditLedger,
        converter: CreditConverter,
        provider: ProviderClient,
        notifier: NotificationSink | None = None,
        storage: StorageUploader | None = None,
        synchronous_models: Iterable[str] = (),
        fanout_concurrency: int = 4,
        partial_fanout_policy: PartialFanoutPolicy = PartialFanoutPolicy.CHARGE_ALL,
    ) -> None:
        if getattr(ledger, "session", session) is not session:
            raise ValueError("Ledger must share the lifecycle session")
        self.session = session
        self.ledger = ledger
        self.converter = converter
        self.provider = provider
        self.notifier = notifier or LoggingNotificationSink()
        self.storage = storage or NullStorageUploader()
        self.synchronous_models = frozenset(synchronous_models)
        self.fanout_concurrency = max(1, fanout_concurrency)
        self.partial_fanout_policy = PartialFanoutPolicy(partial_fanout_policy)

    def estimate_price(
        self, rule: PricingRule, raw_input: Mapping[str, Any], units: int = 1
    ) -> CreditQuote:
        """
        Price a request without side effects.

        Raises:
            PricingError: Rule cannot be evaluated for the input
        """
        return self.converter.quote(rule, prepare_params(raw_input), units)

    async def create(self, request: GenerationRequest) -> list[GenerationData]:
        """
        Reserve credits and submit one provider prediction per requested output.

        Raises:
            PackageLimitExceededError: Package gate rejected the user
            PricingError: Input cannot be priced
            InsufficientCreditsError: Balance cannot cover the quote
            ProviderError: Every provider submission failed (credits are kept)
        """
        with log_context(
            user_id=str(request.user_id),
            model=request.model,
            model_version=request.model_version,
        ):
            limits = await self.ledger.check_package_limits(request.user_id)
            if not limits.can_generate:
                reason = limits.reason or NO_PACKAGE_REASON
                logger.warning("generation_rejected_package_limits", reason=reason)
                raise PackageLimitExceededError(request.user_id, reason)

            quote = self.estimate_price(request.pricing_rule, request.input, request.num_outputs)
            generation_ids = [uuid4() for _ in range(request.num_outputs)]

            # The reservation's commit persists these rows; a failed reservation discards them
            generations = self._stage_generations(
                request, generation_ids, quote.credits_per_unit
            )
            try:
                await self.ledger.reserve(
                    request.user_id,
                    quote.credits,
                    description=f"Generation - {request.model} {request.model_version}",
                    generation_id=generation_ids[0] if len(generation_ids) == 1 else None,
                    audit_metadata={
                        "breakdown": quote.breakdown.as_audit_dict(),
                        "units": quote.units,
                        "credits_per_unit": quote.credits_per_unit,
                        "generation_ids": [str(g) for g in generation_ids],
                    },
                    generations=request.num_outputs,
                )
            except Exception:
                await self._discard_generations(generations)
                raise

            logger.info(
                "generations_created",
                count=len(generations),
                credits_charged=quote.credits,
            )

            results = await self._submit_all(request)
            return await self._settle_submissions(request, generations, results)

    async def get_generation(self, external_id: str) -> GenerationData:
        """
        Get a generation by provider id.

        Raises:
            GenerationNotFoundError: Unknown external id
        """
        generation = await self._find_by_external_id(external_id)
        if generation is None:
            raise GenerationNotFoundError(external_id)
        return self._to_domain(generation)

    async def apply_provider_event(self, event: WebhookEvent) -> ApplyOutcome:
        """
        Apply a provider status report.

        Unknown generations and generations already in a terminal state are
        ignored. Any other error propagates so the caller can retry.
        """
        generation = await self._find_by_external_id(event.id)
        if generation is None:
            logger.warning("generation_not_found_for_event", external_id=event.id)
            return ApplyOutcome.IGNORED_NOT_FOUND
        return await self._apply(generation, event)

    async def refund(self, generation: GenerationData, reason: str) -> bool:
        """
        Return a generation's reserved credits to the account tier.

        Best effort: failures are logged and reported as False, never raised.
        """
        if generation.credits_reserved <= 0:
            logger.debug("refund_skipped_no_credits", generation_id=str(generation.id))
            return False

        try:
            if not await self._claim_refund(generation.id):
                logger.info("refund_already_issued", generation_id=str(generation.id))
                return False

            await self.ledger.refill(
                generation.user_id,
                generation.credits_reserved,
                reason=(
                    f"Refund for failed generation - {generation.model} "
                    f"{generation.model_version}: {reason}"
                ),
                transaction_type=TransactionType.REFUND,
                generation_id=generation.id,
                audit_metadata={
                    "generation_id": str(generation.id),
                    "external_id": generation.external_id,
                    "original_credits_reserved": generation.credits_reserved,
                },
            )
            await self.ledger.release_package_usage(
                generation.user_id, generation.credits_reserved, generations=1
            )
        except Exception as e:
            metrics.record_refund(success=False)
            metrics.record_error(type(e).__name__, "refund")
            logger.error(
                "generation_refund_failed",
                generation_id=str(generation.id),
                user_id=str(generation.user_id),
                credits=generation.credits_reserved,
                error=str(e),
                exc_info=True,
            )
            return False

        metrics.record_refund(success=True)
        logger.info(
            "generation_refunded",
            generation_id=str(generation.id),
            user_id=str(generation.user_id),
            credits=generation.credits_reserved,
        )
        self._publish(
            CreditRefundEvent(
                user_id=generation.user_id,
                credits_refunded=generation.credits_reserved,
                reason=reason,
                generation_id=generation.id,
            )
        )
        return True

    async def reset(self) -> None:
        """Roll back whatever a failed operation left in the session."""
        await self.session.rollback()

    async def mark_failed(self, external_id: str, error_message: str) -> GenerationData | None:
        """
        Force a generation to failed and refund it.

        Used when webhook processing gives up. Generations already completed are
        left alone; already failed ones are refunded if that never happened.
        """
        generation = await self._find_by_external_id(external_id)
        if generation is None:
            logger.warning("mark_failed_generation_not_found", external_id=external_id)
            return None

        metadata = {
            **(generation.audit_metadata or {}),
            "webhook_failed_at": _utc_now().isoformat(),
            "webhook_error": error_message,
        }
        transitioned = True
        try:
            await self._transition(
                generation, GenerationStatus.FAILED, error=error_message, audit_metadata=metadata
            )
        except DuplicateEventError:
            transitioned = False

        snapshot = self._to_domain(generation)
        if snapshot.status is not GenerationStatus.FAILED:
            logger.info(
                "mark_failed_skipped_terminal",
                external_id=external_id,
                status=snapshot.status.value,
            )
            return snapshot

        if snapshot.refunded_at is None:
            await self.refund(snapshot, error_message)
        if transitioned:
            logger.warning("generation_marked_failed", external_id=external_id, error=error_message)
            self._publish_failed(snapshot, error_message)
        return snapshot

    # ========================================================================
    # Event application
    # ========================================================================

    async def _apply(self, generation: Generation, event: WebhookEvent) -> ApplyOutcome:
        current = GenerationStatus(generation.status)
        if current.is_terminal:
            logger.info(
                "provider_event_ignored_terminal",
                external_id=event.id,
                current_status=current.value,
                provider_status=event.status.value,
            )
            return ApplyOutcome.IGNORED_TERMINAL

        target = PROVIDER_STATUS_MAP[event.status]
        try:
            if target is GenerationStatus.COMPLETED:
                await self._complete(generation, event.payload)
            elif target is GenerationStatus.FAILED:
                await self._fail(generation, event.payload)
            else:
                await self._progress(generation, target, event.payload)
        except DuplicateEventError as e:
            logger.info("provider_event_duplicate", external_id=event.id, status=e.status)
            return ApplyOutcome.IGNORED_TERMINAL

        return ApplyOutcome.APPLIED

    async def _complete(self, generation: Generation, payload: PredictionPayload) -> None:
        now = _utc_now()
        processing_time = processing_seconds(generation.created_at, payload.completed_at or now)
        metadata = {
            **(generation.audit_metadata or {}),
            "provider_result": clean_output(payload),
            "webhook_processed_at": now.isoformat(),
        }
        await self._transition(
            generation,
            GenerationStatus.COMPLETED,
            output=payload.output,
            error=None,
            processing_time_seconds=processing_time,
            audit_metadata=metadata,
        )
        snapshot = self._to_domain(generation)
        logger.info(
            "generation_completed",
            generation_id=str(snapshot.id),
            external_id=snapshot.external_id,
            processing_time_seconds=processing_time,
        )

        media_urls = extract_media_urls(payload.output)
        stored_urls = await self._store_media(snapshot, media_urls)
        self._publish(
            GenerationCompletedEvent(
                generation_id=snapshot.id,
                external_id=snapshot.external_id or payload.id,
                user_id=snapshot.user_id,
                model=snapshot.model,
                model_version=snapshot.model_version,
                session_id=snapshot.session_id,
                media_urls=stored_urls or media_urls,
                processing_time_seconds=processing_time,
                credits_used=snapshot.credits_reserved,
            )
        )

    async def _fail(self, generation: Generation, payload: PredictionPayload) -> None:
        error = payload.error or DEFAULT_FAILURE_MESSAGE
        metadata = {
            **(generation.audit_metadata or {}),
            "webhook_processed_at": _utc_now().isoformat(),
            "provider_status": payload.status.value,
        }
        if payload.logs:
            metadata["logs"] = LOGS_TRUNCATED
        await self._transition(
            generation, GenerationStatus.FAILED, error=error, audit_metadata=metadata
        )
        snapshot = self._to_domain(generation)
        logger.warning(
            "generation_failed",
            generation_id=str(snapshot.id),
            external_id=snapshot.external_id,
            error=error,
        )
        await self.refund(snapshot, error)
        self._publish_failed(snapshot, error)

    async def _progress(
        self, generation: Generation, target: GenerationStatus, payload: PredictionPayload
    ) -> None:
        started_at = payload.started_at.isoformat() if payload.started_at else None
        metadata = {
            **(generation.audit_metadata or {}),
            "last_progress_update": _utc_now().isoformat(),
            "provider_status": payload.status.value,
            "started_at": started_at,
        }
        await self._transition(generation, target, audit_metadata=metadata)
        snapshot = self._to_domain(generation)
        logger.info(
            "generation_progress",
            generation_id=str(snapshot.id),
            external_id=snapshot.external_id,
            status=target.value,
        )
        self._publish(
            GenerationProgressEvent(
                generation_id=snapshot.id,
                external_id=snapshot.external_id or payload.id,
                user_id=snapshot.user_id,
                model=snapshot.model,
                model_version=snapshot.model_version,
                session_id=snapshot.session_id,
                status=target.value,
                started_at=started_at,
            )
        )

    async def _store_media(self, generation: GenerationData, urls: list[str]) -> list[str]:
        """Copy media to storage. Failures are logged and never undo completion."""
        if not urls:
            return []

        options = UploadOptions(
            user_id=generation.user_id,
            folder="generations",
            file_name=f"gen_{generation.external_id}",
            metadata={
                "model": generation.model,
                "model_version": generation.model_version,
                "external_id": generation.external_id,
                "processed_at": _utc_now().isoformat(),
            },
        )
        try:
            results = await self.storage.upload_many(urls, options)
            stored = [result.public_url for result in results]
            if stored:
                await self._save_stored_urls(generation.id, stored)
        except Exception as e:
            metrics.record_error(type(e).__name__, "media_upload")
            logger.error(
                "generation_media_upload_failed",
                generation_id=str(generation.id),
                url_count=len(urls),
                error=str(e),
                exc_info=True,
            )
            return []

        logger.info("generation_media_stored", generation_id=str(generation.id), count=len(stored))
        return stored

    # ========================================================================
    # Provider submission
    # ========================================================================

    def _is_synchronous(self, request: GenerationRequest) -> bool:
        return (
            request.model_version in self.synchronous_models
            or request.model in self.synchronous_models
        )

    async def _submit_all(
        self, request: GenerationRequest
    ) -> list[ProviderPrediction | BaseException]:
        synchronous = self._is_synchronous(request)
        provider_model = request.provider_model or request.model
        semaphore = asyncio.Semaphore(self.fanout_concurrency)

        async def submit() -> ProviderPrediction:
            async with semaphore:
                return await self.provider.create_prediction(
                    provider_model, request.input, synchronous=synchronous
                )

        with trace_operation(
            "provider_submission", outputs=request.num_outputs, synchronous=synchronous
        ):
            return await asyncio.gather(
                *(submit() for _ in range(request.num_outputs)), return_exceptions=True
            )

    async def _settle_submissions(
        self,
        request: GenerationRequest,
        generations: list[Generation],
        results: list[ProviderPrediction | BaseException],
    ) -> list[GenerationData]:
        accepted: list[tuple[Generation, ProviderPrediction]] = []
        rejected: list[tuple[Generation, Exception]] = []
        for generation, result in zip(generations, results, strict=True):
            if isinstance(result, Exception):
                rejected.append((generation, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                accepted.append((generation, result))

        for generation, prediction in accepted:
            await self._set_external_id(generation, prediction.id)
            event = self._event_from_prediction(request, prediction)
            await self._apply(generation, event)

        for generation, error in rejected:
            logger.error(
                "generation_provider_call_failed_credits_retained",
                generation_id=str(generation.id),
                credits_reserved=generation.credits_reserved,
                error=str(error),
            )
            await self._transition(
                generation,
                GenerationStatus.FAILED,
                error=f"Provider request failed: {error}",
            )

        charge_succeeded = self.partial_fanout_policy is PartialFanoutPolicy.CHARGE_SUCCEEDED
        if rejected and accepted and charge_succeeded:
            for generation, _ in rejected:
                await self.refund(self._to_domain(generation), "Provider request failed")

        if not accepted:
            raise rejected[0][1]

        return [self._to_domain(generation) for generation in generations]

    def _event_from_prediction(
        self, request: GenerationRequest, prediction: ProviderPrediction
    ) -> WebhookEvent:
        provider_model = request.provider_model or request.model
        payload = PredictionPayload(
            id=prediction.id,
            status=prediction.status,
            model=provider_model,
            output=prediction.output,
            error=prediction.error,
            created_at=prediction.created_at,
            started_at=prediction.started_at,
            completed_at=prediction.completed_at,
        )
        return WebhookEvent(
            id=prediction.id, status=prediction.status, model=provider_model, payload=payload
        )

    def _publish(self, event: NotificationEvent) -> None:
        try:
            self.notifier.publish(event)
        except Exception as e:
            logger.error(
                "notification_publish_failed",
                event_type=type(event).__name__,
                error=str(e),
            )

    def _publish_failed(self, generation: GenerationData, error: str) -> None:
        self._publish(
            GenerationFailedEvent(
                generation_id=generation.id,
                external_id=generation.external_id or "",
                user_id=generation.user_id,
                model=generation.model,
                model_version=generation.model_version,
                session_id=generation.session_id,
                error=error,
                credits_used=generation.credits_reserved,
            )
        )

    # ========================================================================
    # Persistence
    # ========================================================================

    def _stage_generations(
        self,
        request: GenerationRequest,
        generation_ids: list[UUID],
        credits_per_unit: int,
    ) -> list[Generation]:
        """Add pending rows to the session without flushing or committing."""
        now = _utc_now()
        generations = [
            Generation(
                id=generation_id,
                user_id=request.user_id,
                session_id=request.session_id,
                model=request.model,
                model_version=request.model_version,
                status=GenerationStatus.PENDING.value,
                credits_reserved=credits_per_unit,
                input=dict(request.input),
                stored_urls=[],
                audit_metadata={"output_index": index},
                created_at=now,
                updated_at=now,
            )
            for index, generation_id in enumerate(generation_ids)
        ]
        self.session.add_all(generations)
        return generations

    async def _discard_generations(self, generations: list[Generation]) -> None:
        # Rolling back expunges rows that were only pending
        await self.session.rollback()
        logger.info("staged_generations_discarded", count=len(generations))

    async def _set_external_id(self, generation: Generation, external_id: str) -> None:
        generation.external_id = external_id
        await self.session.flush()
        await self.session.commit()

    async def _find_by_external_id(self, external_id: str) -> Generation | None:
        stmt = select(Generation).where(Generation.external_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _transition(
        self, generation: Generation, target: GenerationStatus, **values: Any
    ) -> None:
        """
        Move a generation to `target` unless it is already terminal.

        Raises:
            DuplicateEventError: Row was already completed or failed
        """
        identifier = generation.external_id or str(generation.id)
        stmt = (
            update(Generation)
            .where(
                Generation.id == generation.id,
                Generation.status.not_in(_TERMINAL_VALUES),
            )
            .values(status=target.value, updated_at=_utc_now(), **values)
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = await self.session.execute(stmt)
            if result.rowcount == 0:
                await self.session.rollback()
                await self.session.refresh(generation)
                raise DuplicateEventError(identifier, generation.status)
            await self.session.commit()
        except DuplicateEventError:
            raise
        except Exception:
            await self.session.rollback()
            raise

    async def _claim_refund(self, generation_id: UUID) -> bool:
        stmt = (
            update(Generation)
            .where(Generation.id == generation_id, Generation.refunded_at.is_(None))
            .values(refunded_at=_utc_now())
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return result.rowcount == 1

    async def _save_stored_urls(self, generation_id: UUID, urls: list[str]) -> None:
        stmt = (
            update(Generation)
            .where(Generation.id == generation_id)
            .values(stored_urls=urls, updated_at=_utc_now())
            .execution_options(synchronize_session="fetch")
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    def _to_domain(self, generation: Generation) -> GenerationData:
        return GenerationData(
            id=generation.id,
            user_id=generation.user_id,
            session_id=generation.session_id,
            external_id=generation.external_id,
            model=generation.model,
            model_version=generation.model_version,
            status=GenerationStatus(generation.status),
            credits_reserved=generation.credits_reserved,
            input=generation.input or {},
            output=generation.output,
            error=generation.error,
            stored_urls=list(generation.stored_urls or []),
            processing_time_seconds=generation.processing_time_seconds,
            refunded_at=generation.refunded_at,
            created_at=generation.created_at,
            updated_at=generation.updated_at,
        )
