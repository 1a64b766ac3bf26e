"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal
from typing import Any

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Broker API"
    api_version: str = "0.1.0"
    api_description: str = "Credit reservation and reconciliation for generation requests"
    service_api_token: str = ""  # Required as X-API-Key on client routes

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-broker"

    # Generation provider
    provider_api_token: str = ""
    provider_base_url: str = "https://api.replicate.com/v1"
    provider_webhook_url: str | None = None  # Public URL the provider calls back
    sync_timeout_seconds: float = 60.0  # Interactive (image) workloads
    async_timeout_seconds: float = 10.0  # Acknowledgement only, completion via webhook
    synchronous_models: list[str] = []  # Model versions served with Prefer: wait
    # [{"model", "model_version", "provider_model", "pricing": {...}}], JSON in env
    model_catalog: list[dict[str, Any]] = []
    fanout_concurrency: int = 4
    partial_fanout_policy: str = "charge_all"  # charge_all or charge_succeeded

    # Webhooks
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    webhook_max_attempts: int = 3
    webhook_retry_delays: list[float] = [1.0, 3.0, 9.0]
    monitored_models: list[str] = [
        "kling-v2.1",
        "hailuo-02",
        "video-01",
        "seedance-1-pro",
        "veo-3",
        "veo-3-fast",
    ]

    # Credit conversion
    profit_margin: Decimal = Decimal("1.5")
    credit_value_usd: Decimal = Decimal("0.05")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not Decimal("1.0") <= self.profit_margin <= Decimal("5.0"):
            errors.append(f"PROFIT_MARGIN must be between 1.0 and 5.0, got: {self.profit_margin}")

        if not Decimal("0.001") <= self.credit_value_usd <= Decimal("1.0"):
            errors.append(
                f"CREDIT_VALUE_USD must be between 0.001 and 1.0, got: {self.credit_value_usd}"
            )

        if self.webhook_max_attempts < 1:
            errors.append("WEBHOOK_MAX_ATTEMPTS must be at least 1")
        elif len(self.webhook_retry_delays) < self.webhook_max_attempts - 1:
            errors.append(
                "WEBHOOK_RETRY_DELAYS must define a delay for every retry "
                f"({self.webhook_max_attempts - 1} needed, got {len(self.webhook_retry_delays)})"
            )

        if self.partial_fanout_policy not in ("charge_all", "charge_succeeded"):
            errors.append(
                f"PARTIAL_FANOUT_POLICY must be charge_all or charge_succeeded, "
                f"got: {self.partial_fanout_policy}"
            )

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()
