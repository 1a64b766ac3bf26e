"""
Webhook Gateway - authenticates provider notifications and applies them with retry.

Signatures are HMAC-SHA256 over `<timestamp><raw body>`, hex encoded and sent as
`v1=<hex>` (several space-separated signatures are allowed during secret rotation).
"""

import asyncio
import hashlib
import hmac
import json
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from structlog import get_logger

from credit_broker.exceptions import (
    DuplicateEventError,
    SignatureVerificationError,
    ValidationError,
    WebhookPayloadError,
)
from credit_broker.models.api import PredictionPayload
from credit_broker.models.domain import ApplyOutcome, WebhookEvent, WebhookOutcome
from credit_broker.observability.logging import log_context
from credit_broker.observability.metrics import metrics
from credit_broker.observability.tracing import trace_operation
from credit_broker.services.lifecycle import GenerationLifecycle

logger = get_logger(__name__)

SIGNATURE_VERSION = "v1"

_OUTCOMES = {
    ApplyOutcome.APPLIED: WebhookOutcome.SUCCESS,
    ApplyOutcome.IGNORED_NOT_FOUND: WebhookOutcome.IGNORED,
    ApplyOutcome.IGNORED_TERMINAL: WebhookOutcome.DUPLICATE,
}


def _as_bytes(raw_payload: bytes | str) -> bytes:
    return raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload


def compute_signature(secret: str, timestamp: str, raw_payload: bytes | str) -> str:
    """Hex HMAC-SHA256 of timestamp followed by the raw body."""
    message = timestamp.encode("utf-8") + _as_bytes(raw_payload)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _normalise_model_name(name: str) -> str:
    return name.strip().lower().replace("_", "-")


class WebhookGateway:
    """
    Entry point for provider notifications.

    verify -> parse_event -> is_monitored -> apply (retried) -> final failure.
    """

    def __init__(
        self,
        lifecycle: GenerationLifecycle,
        secret: str,
        monitored_models: Iterable[str],
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 3.0, 9.0),
        tolerance_seconds: int = 300,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {max_attempts}")
        if len(retry_delays) < max_attempts - 1:
            raise ValueError("retry_delays must provide a delay for every retry")

        self.lifecycle = lifecycle
        self.secret = secret
        self.monitored_models = frozenset(_normalise_model_name(m) for m in monitored_models)
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.tolerance_seconds = tolerance_seconds
        self._sleep = sleep
        self._clock = clock

    # ========================================================================
    # Authentication
    # ========================================================================

    def verify(
        self,
        raw_payload: bytes | str,
        signature_header: str | None,
        timestamp_header: str | None,
        secret: str | None = None,
        now: float | None = None,
    ) -> bool:
        """True when the signature matches and the timestamp is fresh."""
        try:
            self.verify_or_raise(raw_payload, signature_header, timestamp_header, secret, now)
        except SignatureVerificationError as e:
            logger.warning("webhook_signature_rejected", reason=e.message)
            return False
        return True

    def verify_or_raise(
        self,
        raw_payload: bytes | str,
        signature_header: str | None,
        timestamp_header: str | None,
        secret: str | None = None,
        now: float | None = None,
    ) -> None:
        """
        Check signature and freshness.

        Raises:
            SignatureVerificationError: Missing/malformed headers, stale timestamp
                or no matching signature
        """
        key = secret if secret is not None else self.secret
        if not key:
            raise SignatureVerificationError("Webhook secret is not configured")
        if not signature_header or not timestamp_header:
            raise SignatureVerificationError("Missing signature or timestamp header")

        timestamp = timestamp_header.strip()
        if not (timestamp.isascii() and timestamp.isdigit()):
            raise SignatureVerificationError("Malformed timestamp header")

        current = self._clock() if now is None else now
        if abs(current - int(timestamp)) > self.tolerance_seconds:
            raise SignatureVerificationError("Timestamp outside tolerance window")

        candidates = self._parse_signatures(signature_header)
        if not candidates:
            raise SignatureVerificationError("Malformed signature header")

        expected = compute_signature(key, timestamp, raw_payload).encode("utf-8")
        if not any(hmac.compare_digest(expected, c.encode("utf-8")) for c in candidates):
            raise SignatureVerificationError("Signature mismatch")

    @staticmethod
    def _parse_signatures(header: str) -> list[str]:
        signatures = []
        for part in header.split():
            version, sep, value = part.partition("=")
            if sep and version == SIGNATURE_VERSION and value:
                signatures.append(value.lower())
        return signatures

    # ========================================================================
    # Parsing / filtering
    # ========================================================================

    def parse_event(
        self,
        raw_payload: bytes | str,
        signature_header: str | None = None,
        timestamp_header: str | None = None,
    ) -> WebhookEvent:
        """
        Parse a verified body.

        Raises:
            WebhookPayloadError: Body is not JSON or not a provider prediction
        """
        try:
            data = json.loads(_as_bytes(raw_payload))
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookPayloadError(f"body is not valid JSON ({e})") from e
        if not isinstance(data, dict):
            raise WebhookPayloadError("body must be a JSON object")

        try:
            payload = PredictionPayload.model_validate(data)
        except PydanticValidationError as e:
            raise WebhookPayloadError(str(e.errors(include_url=False))) from e

        timestamp = None
        raw_timestamp = (timestamp_header or "").strip()
        if raw_timestamp.isascii() and raw_timestamp.isdigit():
            timestamp = int(raw_timestamp)

        return WebhookEvent(
            id=payload.id,
            status=payload.status,
            model=payload.model,
            payload=payload,
            timestamp=timestamp,
            signature=signature_header,
        )

    def is_monitored(self, model: str) -> bool:
        """Match the last segment of `owner/name` against monitored models."""
        name = _normalise_model_name(model.rsplit("/", 1)[-1])
        return bool(name) and name in self.monitored_models

    # ========================================================================
    # Processing
    # ========================================================================

    async def handle(self, event: WebhookEvent) -> WebhookOutcome:
        """
        Apply an event, retrying transient failures.

        Raises:
            ValidationError: Event cannot be applied (not retried)
            Exception: Last error once every attempt failed; the generation has
                been marked failed and refunded
        """
        with log_context(prediction_id=event.id, provider_status=event.status.value):
            if not self.is_monitored(event.model):
                logger.info("webhook_ignored_unmonitored_model", model=event.model)
                metrics.record_webhook(WebhookOutcome.IGNORED.value)
                return WebhookOutcome.IGNORED

            with trace_operation("webhook_handle", prediction_id=event.id):
                outcome = await self._apply_with_retry(event)

            metrics.record_webhook(outcome.value)
            logger.info("webhook_processed", outcome=outcome.value)
            return outcome

    async def _apply_with_retry(self, event: WebhookEvent) -> WebhookOutcome:
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.lifecycle.apply_provider_event(event)
            except DuplicateEventError:
                return WebhookOutcome.DUPLICATE
            except ValidationError:
                metrics.record_webhook("invalid")
                raise
            except Exception as e:
                logger.error(
                    "webhook_attempt_failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                    exc_info=True,
                )
                await self._reset_session()
                if attempt == self.max_attempts:
                    await self._handle_final_failure(event, e)
                    raise
                metrics.webhook_retries_total.inc()
                await self._sleep(self.retry_delays[attempt - 1])
            else:
                return _OUTCOMES[result]

        raise AssertionError("unreachable")

    async def _reset_session(self) -> None:
        # A failed attempt leaves the session unusable until rolled back
        try:
            await self.lifecycle.reset()
        except Exception as e:
            logger.error("webhook_session_reset_failed", error=str(e), exc_info=True)

    async def _handle_final_failure(self, event: WebhookEvent, error: Exception) -> None:
        metrics.webhook_final_failures_total.inc()
        metrics.record_webhook("failed")
        message = f"Webhook processing failed after {self.max_attempts} attempts: {error}"
        try:
            await self.lifecycle.mark_failed(event.id, message)
        except Exception as e:
            logger.error(
                "webhook_final_failure_handling_failed",
                error=str(e),
                original_error=str(error),
                exc_info=True,
            )
