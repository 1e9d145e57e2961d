"""
Unit tests for analytics rollups.
"""

from decimal import Decimal

import pytest

from inference_market.core.analytics import (
    compute_percentile,
    provider_analytics,
    revenue_analytics,
    stream_analytics,
    system_status,
)

from conftest import make_hardware


class TestPercentile:
    """Test percentile interpolation."""

    def test_interpolates_between_ranks(self):
        """Verify linear interpolation on an even-sized sample."""
        assert compute_percentile([10, 20, 30, 40], 50) == pytest.approx(25.0)
        assert compute_percentile([40, 10, 30, 20], 90) == pytest.approx(37.0)

    def test_bounds(self):
        """Verify the extremes and a single value."""
        assert compute_percentile([5, 1, 9], 0) == 1
        assert compute_percentile([5, 1, 9], 100) == 9
        assert compute_percentile([7.5], 50) == 7.5

    def test_invalid_input(self):
        """Verify empty samples and out-of-range percentiles fail."""
        with pytest.raises(ValueError):
            compute_percentile([], 50)
        with pytest.raises(ValueError):
            compute_percentile([1, 2], 101)


class TestRollups:
    """Test rollups over a small populated marketplace."""

    @pytest.fixture
    def populated(self, registry, coordinator, ad_ledger):
        a = registry.register(make_hardware(24, 8, "RTX 4090"), ["m"], "0.0002")
        b = registry.register(make_hardware(8, 8, "RTX 3070"), ["m"], "0.0001")
        registry.register(make_hardware(80, 108, "A100"), ["m"], "0.0004")

        first = coordinator.start(a, "m")
        coordinator.record_usage(first, 1000, 100)
        coordinator.stop(a, first)

        second = coordinator.start(b, "m")
        coordinator.record_usage(second, 500, 300)
        coordinator.fail(second, "lost")

        coordinator.start(a, "m")
        ad_ledger.record_impression("tech_001")
        return a, b

    def test_system_status(self, populated, registry, coordinator, ad_ledger):
        """Verify provider counts, tokens, revenue and latency."""
        status = system_status(registry, coordinator, ad_ledger)

        assert status.total_providers == 3
        assert status.streaming_providers == 1
        assert status.idle_providers == 2
        assert status.active_streams == 1
        assert status.total_tokens_served == 1500
        # 10% of 0.25 inference share plus one impression
        assert status.total_revenue == Decimal("0.0275")
        assert status.average_latency_ms == pytest.approx(200.0)

    def test_provider_analytics(self, populated, registry):
        """Verify totals, averages and the top earner."""
        a, b = populated
        result = provider_analytics(registry, top_n=2)

        assert result.total_providers == 3
        assert result.total_earnings == Decimal("0.25")
        assert result.total_tokens_served == 1500
        assert result.average_tokens_per_provider == pytest.approx(500.0)
        assert [s.provider_id for s in result.top_providers] == [a, b]
        assert result.top_providers[0].hardware_name == "RTX 4090"

    def test_stream_analytics(self, populated, coordinator):
        """Verify outcome counts and latency percentiles."""
        result = stream_analytics(coordinator.history())

        assert result.completed_streams == 1
        assert result.failed_streams == 1
        assert result.total_tokens == 1500
        assert result.median_latency_ms == pytest.approx(200.0)
        assert result.p90_latency_ms == pytest.approx(280.0)

    def test_stream_analytics_empty(self):
        """Verify no history yields no percentiles."""
        result = stream_analytics([])
        assert result.completed_streams == 0
        assert result.median_latency_ms is None

    def test_revenue_analytics(self, populated, ad_ledger):
        """Verify ledger split, day buckets and category breakdown."""
        result = revenue_analytics(ad_ledger, top_n=1)

        assert result.inference_total == Decimal("0.025")
        assert result.ad_total == Decimal("0.0025")
        assert result.total == Decimal("0.0275")
        assert result.today == Decimal("0.0275")
        assert result.yesterday == Decimal(0)
        assert [a.ad_id for a in result.top_ads] == ["tech_001"]
        assert result.category_breakdown["technology"].impressions == 1
        assert result.category_breakdown["finance"].revenue == Decimal(0)
