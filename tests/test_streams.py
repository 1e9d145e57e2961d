"""
Unit tests for the stream coordinator.

Tests the stream lifecycle, usage accounting and post-commit hooks.
"""

import logging
import random
from decimal import Decimal
from unittest.mock import patch

import pytest

from inference_market.core.errors import (
    InvalidUsageError,
    ModelUnsupportedError,
    NotFoundError,
    OwnershipMismatchError,
    ProviderBusyError,
    StreamNotActiveError,
)
from inference_market.core.registry import ProviderStatus
from inference_market.core.streams import StreamCoordinator, StreamStatus
from inference_market.core.transport import Notifier

from conftest import make_hardware


class RecordingNotifier(Notifier):
    def __init__(self):
        self.provider_events = []
        self.client_events = []

    def notify_provider(self, provider_id, event, payload=None):
        self.provider_events.append((provider_id, event, payload))

    def notify_client(self, stream_id, payload):
        self.client_events.append((stream_id, payload))


class BrokenNotifier(Notifier):
    def notify_provider(self, provider_id, event, payload=None):
        raise ConnectionError("provider socket closed")

    def notify_client(self, stream_id, payload):
        raise ConnectionError("client socket closed")


@pytest.fixture
def provider_id(registry):
    return registry.register(make_hardware(), ["llama-3-70b"], "0.0002")


class TestStart:
    """Test stream admission."""

    def test_start_marks_provider_streaming(self, coordinator, registry, provider_id, clock):
        """Verify start creates an ACTIVE stream bound to the provider."""
        stream_id = coordinator.start(provider_id, "llama-3-70b", "high")

        stream = coordinator.get(stream_id)
        assert stream_id == "stream_1"
        assert stream.status == StreamStatus.ACTIVE
        assert stream.provider_id == provider_id
        assert stream.quality_tier == "high"
        assert stream.started_at == clock.now
        assert stream.price_per_token == Decimal("0.0002")

        provider = registry.get(provider_id)
        assert provider.status == ProviderStatus.STREAMING
        assert provider.current_stream_id == stream_id

    def test_start_on_busy_provider(self, coordinator, provider_id):
        """Verify a second stream on the same provider is refused."""
        coordinator.start(provider_id, "llama-3-70b")
        with pytest.raises(ProviderBusyError):
            coordinator.start(provider_id, "llama-3-70b")
        assert len(coordinator.active_streams()) == 1

    def test_start_unsupported_model(self, coordinator, registry, provider_id):
        """Verify a provider cannot be started on a model it lacks."""
        with pytest.raises(ModelUnsupportedError):
            coordinator.start(provider_id, "mistral-7b")
        assert registry.get(provider_id).status == ProviderStatus.IDLE

    def test_start_unknown_provider(self, coordinator):
        """Verify an unknown provider id fails with NotFound."""
        with pytest.raises(NotFoundError):
            coordinator.start("provider_99", "llama-3-70b")

    def test_failed_admission_does_not_consume_id(self, coordinator, registry, provider_id):
        """Verify stream ids stay dense when admission is refused."""
        other = registry.register(make_hardware(), ["llama-3-70b"], "0.0002")
        coordinator.start(provider_id, "llama-3-70b")
        with pytest.raises(ProviderBusyError):
            coordinator.start(provider_id, "llama-3-70b")

        assert coordinator.start(other, "llama-3-70b") == "stream_2"


class TestUsageAndStop:
    """Test metering and completion."""

    def test_end_to_end_earnings(self, coordinator, registry, provider_id, clock):
        """Verify two usage reports settle to exact earnings and averaged latency."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.record_usage(stream_id, 500, 120)
        coordinator.record_usage(stream_id, 500, 80)
        clock.advance(seconds=10)

        summary = coordinator.stop(provider_id, stream_id)

        assert summary.status == StreamStatus.COMPLETED
        assert summary.tokens_processed == 1000
        assert summary.earnings == Decimal("0.2")
        assert summary.observed_latency_ms == pytest.approx(100.0)
        assert summary.duration_ms == 10000.0
        assert summary.tokens_per_second == pytest.approx(100.0)

        provider = registry.get(provider_id)
        assert provider.status == ProviderStatus.IDLE
        assert provider.current_stream_id is None
        assert provider.total_earnings == Decimal("0.2")
        assert provider.total_tokens_served == 1000

    def test_accrued_revenue_tracks_usage(self, coordinator, provider_id):
        """Verify the running revenue follows each report."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        snapshot = coordinator.record_usage(stream_id, 250, 50)
        assert snapshot.accrued_revenue == Decimal("0.05")
        assert snapshot.usage_events == 1

    def test_many_small_reports_match_one_large(self, coordinator, registry):
        """Verify earnings are exact however usage is split across reports."""
        small = registry.register(make_hardware(), ["llama-3-70b"], "0.0003")
        large = registry.register(make_hardware(), ["llama-3-70b"], "0.0003")

        small_stream = coordinator.start(small, "llama-3-70b")
        for _ in range(1000):
            coordinator.record_usage(small_stream, 7, 10)
        large_stream = coordinator.start(large, "llama-3-70b")
        coordinator.record_usage(large_stream, 7000, 10)

        assert coordinator.stop(small, small_stream).earnings == Decimal("2.1")
        assert coordinator.stop(large, large_stream).earnings == Decimal("2.1")
        assert registry.get(small).total_earnings == registry.get(large).total_earnings

    def test_zero_usage_stream(self, coordinator, provider_id):
        """Verify a stream without usage closes with zero earnings."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        summary = coordinator.stop(provider_id, stream_id)

        assert summary.earnings == Decimal(0)
        assert summary.tokens_per_second == 0.0

    @pytest.mark.parametrize("tokens,latency", [(-1, 10), (10, -5), (1.5, 10), (True, 10)])
    def test_invalid_usage_rejected(self, coordinator, provider_id, tokens, latency):
        """Verify bad usage reports leave the stream untouched."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        with pytest.raises(InvalidUsageError):
            coordinator.record_usage(stream_id, tokens, latency)

        stream = coordinator.get(stream_id)
        assert stream.tokens_processed == 0
        assert stream.usage_events == 0

    def test_second_stop_not_active(self, coordinator, registry, provider_id):
        """Verify closing twice fails without crediting twice."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.record_usage(stream_id, 100, 10)
        coordinator.stop(provider_id, stream_id)

        with pytest.raises(StreamNotActiveError):
            coordinator.stop(provider_id, stream_id)
        with pytest.raises(StreamNotActiveError):
            coordinator.record_usage(stream_id, 100, 10)
        with pytest.raises(StreamNotActiveError):
            coordinator.fail(stream_id, "late failure")
        assert registry.get(provider_id).total_tokens_served == 100

    def test_stop_by_other_provider(self, coordinator, registry, provider_id):
        """Verify only the owning provider can stop a stream."""
        other = registry.register(make_hardware(), ["llama-3-70b"], "0.0002")
        stream_id = coordinator.start(provider_id, "llama-3-70b")

        with pytest.raises(OwnershipMismatchError):
            coordinator.stop(other, stream_id)
        assert coordinator.get(stream_id).status == StreamStatus.ACTIVE

    def test_unknown_stream(self, coordinator, provider_id):
        """Verify unknown stream ids fail with NotFound."""
        with pytest.raises(NotFoundError):
            coordinator.stop(provider_id, "stream_404")
        with pytest.raises(NotFoundError):
            coordinator.record_usage("stream_404", 1, 1)

    def test_failed_release_keeps_stream_active(self, coordinator, registry, provider_id):
        """Verify a registry failure during close rolls nothing forward."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.record_usage(stream_id, 100, 10)

        with patch.object(registry, "release", side_effect=RuntimeError("registry down")):
            with pytest.raises(RuntimeError):
                coordinator.stop(provider_id, stream_id)

        assert coordinator.get(stream_id).status == StreamStatus.ACTIVE
        assert registry.get(provider_id).status == ProviderStatus.STREAMING

        summary = coordinator.stop(provider_id, stream_id)
        assert summary.earnings == Decimal("0.02")


class TestFail:
    """Test administrative failure."""

    def test_fail_credits_reported_tokens(self, coordinator, registry, provider_id):
        """Verify already reported usage is paid on failure."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.record_usage(stream_id, 300, 40)

        summary = coordinator.fail(stream_id, "heartbeat lost")

        assert summary.status == StreamStatus.FAILED
        assert summary.failure_reason == "heartbeat lost"
        assert summary.earnings == Decimal("0.06")
        provider = registry.get(provider_id)
        assert provider.status == ProviderStatus.IDLE
        assert provider.total_tokens_served == 300
        assert coordinator.get(stream_id).failure_reason == "heartbeat lost"

    def test_close_attributes_inference_share(self, coordinator, ad_ledger, provider_id):
        """Verify a share of every closed stream's earnings becomes revenue."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.record_usage(stream_id, 1000, 10)
        coordinator.stop(provider_id, stream_id)

        assert ad_ledger.revenue_ledger.inference_total == Decimal("0.02")
        assert ad_ledger.today_revenue() == Decimal("0.02")

    def test_share_must_be_fraction(self, registry, ad_ledger):
        """Verify the inference share is validated."""
        with pytest.raises(ValueError):
            StreamCoordinator(registry, ad_ledger, inference_revenue_share="1.5")


class TestHooks:
    """Test notifications and close listeners."""

    def test_notifier_receives_lifecycle_events(self, registry, ad_ledger, clock, provider_id):
        """Verify provider and client hooks fire after commits."""
        notifier = RecordingNotifier()
        coordinator = StreamCoordinator(registry, ad_ledger, notifier=notifier, clock=clock)

        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.record_usage(stream_id, 10, 5)
        coordinator.stop(provider_id, stream_id)

        events = [event for _, event, _ in notifier.provider_events]
        assert events == ["stream.started", "stream.completed"]
        assert [p["event"] for _, p in notifier.client_events] == ["started", "usage", "completed"]

    def test_notifier_failure_does_not_roll_back(self, registry, ad_ledger, clock, provider_id, caplog):
        """Verify a broken transport is logged and the close still holds."""
        coordinator = StreamCoordinator(registry, ad_ledger, notifier=BrokenNotifier(), clock=clock)

        with caplog.at_level(logging.WARNING, logger="inference_market.core.streams"):
            stream_id = coordinator.start(provider_id, "llama-3-70b")
            summary = coordinator.stop(provider_id, stream_id)

        assert summary.status == StreamStatus.COMPLETED
        assert registry.get(provider_id).status == ProviderStatus.IDLE
        assert "notify_provider failed" in caplog.text

    def test_close_listeners_receive_summaries(self, coordinator, provider_id):
        """Verify listeners see every close, and a failing one is isolated."""
        seen = []

        def broken(summary):
            raise RuntimeError("disk full")

        coordinator.add_close_listener(broken)
        coordinator.add_close_listener(seen.append)

        stream_id = coordinator.start(provider_id, "llama-3-70b")
        coordinator.fail(stream_id, "gone")

        assert [s.stream_id for s in seen] == [stream_id]
        assert seen[0].status == StreamStatus.FAILED


class TestQueries:
    """Test read-side helpers."""

    def test_history_and_active_for(self, coordinator, provider_id):
        """Verify streams move from active to history on close."""
        stream_id = coordinator.start(provider_id, "llama-3-70b")
        assert coordinator.active_stream_for(provider_id).id == stream_id

        coordinator.stop(provider_id, stream_id)
        assert coordinator.active_stream_for(provider_id) is None
        assert coordinator.active_streams() == []
        assert [s.id for s in coordinator.history()] == [stream_id]


class TestInvariants:
    """Randomised lifecycle runs checked against the registry."""

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_random_operations_keep_state_consistent(self, coordinator, registry, seed):
        """Verify provider/stream bindings and payouts stay consistent."""
        rng = random.Random(seed)
        providers = [
            registry.register(make_hardware(), ["m"], rng.choice(["0.0001", "0.0002", "0.0005"]))
            for _ in range(4)
        ]
        paid = {p: Decimal(0) for p in providers}

        for _ in range(200):
            active = coordinator.active_streams()
            action = rng.random()
            if action < 0.35:
                idle = [p for p in providers if registry.get(p).status == ProviderStatus.IDLE]
                if idle:
                    coordinator.start(rng.choice(idle), "m")
            elif action < 0.7 and active:
                coordinator.record_usage(rng.choice(active).id, rng.randint(0, 500), rng.uniform(1, 200))
            elif action < 0.9 and active:
                stream = rng.choice(active)
                paid[stream.provider_id] += coordinator.stop(stream.provider_id, stream.id).earnings
            elif active:
                stream = rng.choice(active)
                paid[stream.provider_id] += coordinator.fail(stream.id, "random failure").earnings

            active_by_provider = {s.provider_id: s.id for s in coordinator.active_streams()}
            assert len(active_by_provider) == len(coordinator.active_streams())
            for provider_id in providers:
                provider = registry.get(provider_id)
                if provider.status == ProviderStatus.STREAMING:
                    assert active_by_provider[provider_id] == provider.current_stream_id
                else:
                    assert provider_id not in active_by_provider
                    assert provider.current_stream_id is None

        for provider_id in providers:
            assert registry.get(provider_id).total_earnings == paid[provider_id]
