"""
Generation provider client (Replicate-style prediction API).

Async workloads are acknowledged quickly and complete through webhooks.
Synchronous workloads ask the provider to hold the connection until done.
"""

from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError
from structlog import get_logger

from credit_broker.exceptions import ProviderClientError, ProviderTransientError
from credit_broker.models.api import PredictionPayload
from credit_broker.models.domain import ProviderPrediction
from credit_broker.observability.metrics import metrics

logger = get_logger(__name__)

WEBHOOK_EVENTS = ["start", "completed"]


class ProviderClient:
    """Creates predictions on the generation provider."""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        webhook_url: str | None = None,
        sync_timeout: float = 60.0,
        async_timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.webhook_url = webhook_url
        self.sync_timeout = sync_timeout
        self.async_timeout = async_timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    def endpoint_for(self, provider_model: str) -> str:
        """Prediction endpoint for an `owner/name` model."""
        return f"{self.base_url}/models/{provider_model.strip('/')}/predictions"

    async def create_prediction(
        self,
        provider_model: str,
        input: dict[str, Any],
        synchronous: bool = False,
    ) -> ProviderPrediction:
        """
        Submit a prediction.

        Raises:
            ProviderClientError: Provider rejected the request (4xx)
            ProviderTransientError: 5xx, timeout, network failure or unreadable response
        """
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        body: dict[str, Any] = {"input": input}

        if synchronous:
            headers["Prefer"] = "wait"
            timeout = self.sync_timeout
        else:
            timeout = self.async_timeout

        # Synchronous calls may still finish late, so the webhook is always registered
        if self.webhook_url:
            body["webhook"] = self.webhook_url
            body["webhook_events_filter"] = WEBHOOK_EVENTS

        endpoint = self.endpoint_for(provider_model)
        logger.info(
            "provider_prediction_requested",
            endpoint=endpoint,
            synchronous=synchronous,
            timeout=timeout,
        )

        try:
            response = await self.http_client.post(
                endpoint, json=body, headers=headers, timeout=timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            detail = _error_detail(e.response)
            logger.error(
                "provider_prediction_rejected",
                endpoint=endpoint,
                status=status_code,
                detail=detail,
            )
            if 400 <= status_code < 500:
                metrics.record_provider_call("client_error")
                raise ProviderClientError(detail, status_code=status_code)
            metrics.record_provider_call("server_error")
            raise ProviderTransientError(detail, status_code=status_code)
        except httpx.TimeoutException as e:
            logger.error("provider_prediction_timeout", endpoint=endpoint, timeout=timeout)
            metrics.record_provider_call("timeout")
            raise ProviderTransientError(f"Request timed out after {timeout}s") from e
        except httpx.TransportError as e:
            logger.error("provider_prediction_network_error", endpoint=endpoint, error=str(e))
            metrics.record_provider_call("network_error")
            raise ProviderTransientError(f"Failed to reach provider: {e}") from e

        try:
            payload = PredictionPayload.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            logger.error("provider_prediction_unreadable", endpoint=endpoint, error=str(e))
            metrics.record_provider_call("invalid_response")
            raise ProviderTransientError("Provider returned an unreadable prediction") from e

        metrics.record_provider_call("success")
        logger.info(
            "provider_prediction_created",
            prediction_id=payload.id,
            status=payload.status.value,
        )
        return ProviderPrediction(
            id=payload.id,
            status=payload.status,
            output=payload.output,
            error=payload.error,
            created_at=payload.created_at,
            started_at=payload.started_at,
            completed_at=payload.completed_at,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("detail"):
        return str(data["detail"])
    return f"HTTP {response.status_code}"
