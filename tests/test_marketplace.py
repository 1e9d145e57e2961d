"""
Integration tests for the marketplace facade.

Tests admission (including races), provider removal, ads and wiring from
configuration.
"""

import os
import tempfile
import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from inference_market.config.loader import MarketplaceConfig
from inference_market.core.errors import (
    ModelUnsupportedError,
    NoProviderAvailableError,
    NotFoundError,
)
from inference_market.core.marketplace import Marketplace
from inference_market.core.registry import ProviderStatus
from inference_market.core.streams import StreamStatus
from inference_market.storage.repository import StreamHistoryRepository

from conftest import make_hardware


class TestAdmission:
    """Test request_stream."""

    def test_request_stream_picks_best(self, marketplace):
        """Verify the highest-scoring provider is admitted."""
        marketplace.register_provider(make_hardware(8, 8), ["llama-3-70b"], 0.00005)
        best = marketplace.register_provider(make_hardware(24, 8), ["llama-3-70b"], 0.0001)

        handle = marketplace.request_stream("llama-3-70b", "standard")

        assert handle.provider_id == best
        assert marketplace.registry.get(best).status == ProviderStatus.STREAMING
        assert marketplace.coordinator.get(handle.stream_id).provider_id == best

    def test_unsupported_vs_unavailable(self, marketplace):
        """Verify unknown models and busy capacity fail differently."""
        marketplace.register_provider(make_hardware(), ["llama-3-70b"], 0.0001)

        with pytest.raises(ModelUnsupportedError):
            marketplace.request_stream("gpt-4")

        marketplace.request_stream("llama-3-70b")
        with pytest.raises(NoProviderAvailableError):
            marketplace.request_stream("llama-3-70b")

    def test_stale_match_is_retried(self, marketplace):
        """Verify losing the admission race re-runs matching."""
        first = marketplace.register_provider(make_hardware(24, 8), ["m"], 0.0001)
        second = marketplace.register_provider(make_hardware(8, 8), ["m"], 0.0001)
        marketplace.registry.mark_streaming(first, "stream_elsewhere")
        stale = marketplace.registry.get(first)

        original = marketplace.matcher.find_provider
        with patch.object(
            marketplace.matcher, "find_provider",
            side_effect=[stale, original("m")],
        ) as find:
            handle = marketplace.request_stream("m")

        assert handle.provider_id == second
        assert find.call_count == 2

    def test_admission_attempts_exhausted(self, clock):
        """Verify repeated lost races end in NoProviderAvailable."""
        marketplace = Marketplace(max_admission_attempts=2, clock=clock)
        provider_id = marketplace.register_provider(make_hardware(), ["m"], 0.0001)
        stale = marketplace.registry.get(provider_id)
        marketplace.registry.mark_streaming(provider_id, "stream_elsewhere")

        with patch.object(marketplace.matcher, "find_provider", return_value=stale) as find:
            with pytest.raises(NoProviderAvailableError):
                marketplace.request_stream("m")
        assert find.call_count == 2

    def test_concurrent_requests_admit_once(self, marketplace):
        """Verify one idle provider is never handed to two requests."""
        marketplace.register_provider(make_hardware(), ["m"], 0.0001)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def request():
            barrier.wait()
            try:
                outcome = marketplace.request_stream("m")
            except NoProviderAvailableError as e:
                outcome = e
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=request) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        admitted = [r for r in results if not isinstance(r, Exception)]
        assert len(admitted) == 1
        assert len(marketplace.coordinator.active_streams()) == 1

    def test_invalid_attempts(self):
        """Verify at least one admission attempt is required."""
        with pytest.raises(ValueError):
            Marketplace(max_admission_attempts=0)


class TestLifecycle:
    """Test the full request/usage/end path."""

    def test_request_report_end(self, marketplace, clock):
        """Verify a full stream settles the provider and the ledger."""
        provider_id = marketplace.register_provider(make_hardware(), ["m"], "0.0002")
        handle = marketplace.request_stream("m")
        marketplace.report_usage(handle.stream_id, 500, 120)
        marketplace.report_usage(handle.stream_id, 500, 80)
        clock.advance(seconds=5)

        summary = marketplace.end_stream(provider_id, handle.stream_id)

        assert summary.earnings == Decimal("0.2")
        assert summary.observed_latency_ms == pytest.approx(100.0)
        assert marketplace.get_system_status().idle_providers == 1
        assert marketplace.get_revenue_analytics().inference_total == Decimal("0.02")
        assert marketplace.get_stream_analytics().completed_streams == 1
        assert marketplace.get_provider_analytics().total_earnings == Decimal("0.2")

    def test_available_models(self, marketplace):
        """Verify the model union across providers."""
        marketplace.register_provider(make_hardware(), ["mistral-7b", "llama-3-70b"], 0.0001)
        marketplace.register_provider(make_hardware(), ["llama-3-70b"], 0.0001)
        assert marketplace.available_models() == ["llama-3-70b", "mistral-7b"]


class TestRemoval:
    """Test provider removal."""

    def test_remove_idle_provider(self, marketplace):
        """Verify an idle provider is removed without a summary."""
        provider_id = marketplace.register_provider(make_hardware(), ["m"], 0.0001)
        assert marketplace.remove_provider(provider_id) is None
        assert marketplace.registry.get(provider_id).status == ProviderStatus.REMOVED

        with pytest.raises(ModelUnsupportedError):
            marketplace.request_stream("m")

    def test_remove_streaming_provider_fails_stream(self, marketplace):
        """Verify removal force-fails the active stream and pays reported usage."""
        provider_id = marketplace.register_provider(make_hardware(), ["m"], "0.0002")
        handle = marketplace.request_stream("m")
        marketplace.report_usage(handle.stream_id, 100, 10)

        summary = marketplace.remove_provider(provider_id)

        assert summary.status == StreamStatus.FAILED
        assert summary.failure_reason == "provider removed"
        provider = marketplace.registry.get(provider_id)
        assert provider.status == ProviderStatus.REMOVED
        assert provider.total_earnings == Decimal("0.02")

    def test_remove_retries_when_readmitted(self, marketplace):
        """Verify a request admitted mid-removal is failed before the provider goes."""
        provider_id = marketplace.register_provider(make_hardware(), ["m"], "0.0002")
        first = marketplace.request_stream("m")
        original_fail = marketplace.coordinator.fail
        readmitted = []

        def fail_then_readmit(stream_id, reason):
            summary = original_fail(stream_id, reason)
            if not readmitted:
                readmitted.append(marketplace.request_stream("m"))
            return summary

        with patch.object(marketplace.coordinator, "fail", side_effect=fail_then_readmit):
            summary = marketplace.remove_provider(provider_id)

        assert summary.stream_id == readmitted[0].stream_id
        assert marketplace.registry.get(provider_id).status == ProviderStatus.REMOVED
        statuses = {s.id: s.status for s in marketplace.coordinator.history()}
        assert statuses == {
            first.stream_id: StreamStatus.FAILED,
            readmitted[0].stream_id: StreamStatus.FAILED,
        }
        assert marketplace.coordinator.active_streams() == []

    def test_remove_unknown_provider(self, marketplace):
        """Verify removing an unknown id fails with NotFound."""
        with pytest.raises(NotFoundError):
            marketplace.remove_provider("provider_7")


class TestAds:
    """Test ad operations exposed by the facade."""

    def test_inject_and_click(self, marketplace):
        """Verify injection and click revenue flow into analytics."""
        prompt = "Help me with code. I write software daily. Programming is fun."
        result = marketplace.inject_ad(prompt, "user_1")
        assert "[Sponsored:" in result

        marketplace.record_ad_click("tech_001")
        revenue = marketplace.get_revenue_analytics()
        assert revenue.ad_total == Decimal("0.0025") + Decimal("0.0625")
        assert revenue.top_ads[0].ad_id == "tech_001"


class TestFromConfig:
    """Test construction from configuration."""

    def test_history_listener_persists_streams(self, clock):
        """Verify closed streams land in the configured database."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "history.db")
            marketplace = Marketplace.from_config(MarketplaceConfig(db_path=db_path), clock=clock)

            provider_id = marketplace.register_provider(make_hardware(), ["m"], "0.0002")
            handle = marketplace.request_stream("m")
            marketplace.report_usage(handle.stream_id, 1000, 50)
            marketplace.end_stream(provider_id, handle.stream_id)

            records = StreamHistoryRepository(db_path).get_recent_records()
            assert len(records) == 1
            assert records[0].stream_id == handle.stream_id
            assert Decimal(records[0].earnings) == Decimal("0.2")

    def test_config_values_are_applied(self, clock):
        """Verify matching and revenue settings reach the components."""
        config = MarketplaceConfig()
        marketplace = Marketplace.from_config(config, clock=clock)

        assert marketplace.max_admission_attempts == 3
        assert marketplace.matcher.price_unit_tokens == 1_000_000
        assert marketplace.coordinator.inference_revenue_share == Decimal("0.1")
        assert marketplace.ad_ledger.cooldown_ms == 300_000
