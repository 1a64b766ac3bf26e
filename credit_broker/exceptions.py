"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes alongside their message.
"""

from uuid import UUID


class BrokerError(Exception):
    """Base exception for all credit broker errors."""

    pass


# ============================================================================
# Validation (surfaced synchronously, no side effects)
# ============================================================================


class ValidationError(BrokerError):
    """Raised when caller-supplied input cannot be processed."""

    pass


class PricingError(ValidationError):
    """Raised when a pricing rule cannot be evaluated for the given parameters."""

    pass


class MissingParameterError(PricingError):
    """Raised when a per-unit rule's selector parameter is absent."""

    def __init__(self, parameter: str) -> None:
        self.parameter = parameter
        super().__init__(f"Required parameter '{parameter}' is missing")


class NoRateForValueError(PricingError):
    """Raised when a per-unit rule has no rate for the selected value."""

    def __init__(self, parameter: str, value: object) -> None:
        self.parameter = parameter
        self.value = value
        super().__init__(f"No rate found for {parameter}='{value}'")


class InvalidUnitsError(PricingError):
    """Raised when the unit count is not numeric."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid unit count: {value!r}")


class NoMatchingRuleError(PricingError):
    """Raised when no conditional branch matches the parameters."""

    def __init__(self) -> None:
        super().__init__("No matching conditional rule found for given parameters")


class WebhookPayloadError(ValidationError):
    """Raised when a webhook body is not a valid provider notification."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid webhook payload: {message}")


# ============================================================================
# Ledger
# ============================================================================


class InsufficientCreditsError(BrokerError):
    """Raised when a user's total available credits cannot cover a reservation."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, Available: {available}")


class PackageLimitExceededError(BrokerError):
    """Raised when the package gate rejects a request before pricing."""

    def __init__(self, user_id: UUID, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Package limit reached for {user_id}: {reason}")


class BalanceNotFoundError(BrokerError):
    """Raised when a user has no credit balance row."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"Credit balance not found for user: {user_id}")


class WriteVerificationError(BrokerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BrokerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


# ============================================================================
# Generations / Provider
# ============================================================================


class GenerationNotFoundError(BrokerError):
    """Raised when a generation lookup by id or external id fails."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"Generation not found: {identifier}")


class ProviderError(BrokerError):
    """Base for failures talking to the generation provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Provider error: {message}")


class ProviderClientError(ProviderError):
    """4xx from the provider. Not retryable; reserved credits are kept."""

    pass


class ProviderTransientError(ProviderError):
    """5xx, timeout or network failure. Retryable."""

    pass


# ============================================================================
# Webhooks
# ============================================================================


class SignatureVerificationError(BrokerError):
    """Raised when a webhook fails authenticity checks."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class DuplicateEventError(BrokerError):
    """Raised when an event targets a generation already in a terminal state."""

    def __init__(self, external_id: str, status: str) -> None:
        self.external_id = external_id
        self.status = status
        super().__init__(f"Duplicate event for {external_id}: already {status}")
