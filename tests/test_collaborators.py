"""
Tests for the default collaborators and the model catalog.
"""

from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest

from credit_broker.exceptions import PricingError
from credit_broker.models.domain import ConditionalPricing, FixedPricing, PerUnitPricing
from credit_broker.services.collaborators import (
    CatalogEntry,
    CreditRefundEvent,
    GenerationCompletedEvent,
    LoggingNotificationSink,
    NullStorageUploader,
    StaticModelCatalog,
    UploadOptions,
)

RAW_CATALOG = [
    {
        "model": "kling",
        "model_version": "v2.1",
        "provider_model": "kwaivgi/kling-v2.1",
        "pricing": {
            "type": "per_second",
            "parameter": "mode",
            "rates": {"standard": "0.05", "pro": "0.09"},
        },
    },
    {
        "model": "flux",
        "model_version": "schnell",
        "provider_model": "black-forest-labs/flux-schnell",
        "pricing": {"type": "fixed", "price": "0.003"},
    },
    {
        "model": "veo",
        "model_version": "3",
        "provider_model": "google/veo-3",
        "pricing": {
            "type": "conditional",
            "rules": [{"conditions": {"generate_audio": True}, "price": "6.00"}],
        },
    },
]


class TestStaticModelCatalog:
    """Tests for StaticModelCatalog."""

    def test_from_config(self):
        catalog = StaticModelCatalog.from_config(RAW_CATALOG)

        assert len(catalog) == 3
        kling = catalog.get("kling", "v2.1")
        assert kling is not None
        assert kling.provider_model == "kwaivgi/kling-v2.1"
        assert isinstance(kling.pricing_rule, PerUnitPricing)
        assert kling.pricing_rule.rates["pro"] == Decimal("0.09")
        assert isinstance(catalog.get("flux", "schnell").pricing_rule, FixedPricing)
        assert isinstance(catalog.get("veo", "3").pricing_rule, ConditionalPricing)

    def test_lookup_is_by_model_and_version(self):
        catalog = StaticModelCatalog.from_config(RAW_CATALOG)

        assert catalog.get("kling", "v1.6") is None
        assert catalog.get("v2.1", "kling") is None

    def test_empty(self):
        catalog = StaticModelCatalog()
        assert len(catalog) == 0
        assert catalog.get("kling", "v2.1") is None

    def test_later_entry_replaces_earlier(self):
        first = CatalogEntry("kling", "v2.1", "a/kling", FixedPricing(price=Decimal("1")))
        second = CatalogEntry("kling", "v2.1", "b/kling", FixedPricing(price=Decimal("2")))

        catalog = StaticModelCatalog([first, second])

        assert len(catalog) == 1
        assert catalog.get("kling", "v2.1") is second

    @pytest.mark.parametrize(
        "pricing",
        [
            {"type": "fixed"},
            {"type": "per_unit", "parameter": "mode", "rates": {"pro": "abc"}},
            {"type": "subscription", "price": "1"},
        ],
    )
    def test_malformed_pricing(self, pricing):
        raw = [{**RAW_CATALOG[1], "pricing": pricing}]

        with pytest.raises(PricingError):
            StaticModelCatalog.from_config(raw)


class TestDefaultCollaborators:
    """Tests for the logging notifier and the null uploader."""

    def test_logging_sink_logs_event(self):
        user_id = uuid4()
        generation_id = uuid4()
        event = GenerationCompletedEvent(
            generation_id=generation_id,
            external_id="pred-1",
            user_id=user_id,
            model="kling",
            model_version="v2.1",
            session_id=None,
        )

        with patch("credit_broker.services.collaborators.logger") as mock_logger:
            LoggingNotificationSink().publish(event)

        mock_logger.info.assert_called_once_with(
            "notification_published",
            event_type="GenerationCompletedEvent",
            user_id=str(user_id),
            generation_id=str(generation_id),
        )

    def test_logging_sink_refund_without_generation(self):
        event = CreditRefundEvent(user_id=uuid4(), credits_refunded=10, reason="failed")

        with patch("credit_broker.services.collaborators.logger") as mock_logger:
            LoggingNotificationSink().publish(event)

        assert mock_logger.info.call_args.kwargs["generation_id"] is None

    async def test_null_uploader_stores_nothing(self):
        results = await NullStorageUploader().upload_many(
            ["https://replicate.delivery/a.mp4"], UploadOptions(user_id=uuid4())
        )
        assert results == []

    def test_upload_options_defaults(self):
        options = UploadOptions(user_id=uuid4())
        assert options.folder == "generations"
        assert options.session_id is None
        assert options.metadata == {}
