"""
Stream lifecycle and usage accounting.

State machine per stream: ACTIVE -> COMPLETED | FAILED. Both end states are
terminal. Closing a stream credits the provider and returns it to IDLE in one
registry call; if that call fails the stream stays ACTIVE so the caller can
retry. Notifications and close listeners run only after the state has been
committed and never undo it.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional

from .ads import AdLedger
from .errors import (
    ModelUnsupportedError,
    NotFoundError,
    OwnershipMismatchError,
    StreamNotActiveError,
)
from .pricing import Number, calculate_earnings, to_money
from .registry import ProviderRegistry
from .transport import Notifier
from .usage import UsageReport

logger = logging.getLogger(__name__)

DEFAULT_INFERENCE_REVENUE_SHARE = Decimal("0.1")


class StreamStatus(Enum):
    """Lifecycle states of a stream."""
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Stream:
    """One admitted, metered inference session."""
    id: str
    provider_id: str
    model: str
    quality_tier: str
    price_per_token: Decimal
    started_at: datetime
    status: StreamStatus = StreamStatus.ACTIVE
    ended_at: Optional[datetime] = None
    tokens_processed: int = 0
    accrued_revenue: Decimal = field(default_factory=Decimal)
    observed_latency_ms: float = 0.0
    usage_events: int = 0
    failure_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == StreamStatus.ACTIVE


@dataclass(frozen=True)
class StreamSummary:
    """Economics of a closed stream."""
    stream_id: str
    provider_id: str
    model: str
    quality_tier: str
    status: StreamStatus
    tokens_processed: int
    earnings: Decimal
    duration_ms: float
    tokens_per_second: float
    observed_latency_ms: float
    started_at: datetime
    ended_at: datetime
    failure_reason: Optional[str] = None


CloseListener = Callable[[StreamSummary], None]


class StreamCoordinator:
    """Owns every stream and drives provider status through the registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        ad_ledger: AdLedger,
        notifier: Optional[Notifier] = None,
        inference_revenue_share: Number = DEFAULT_INFERENCE_REVENUE_SHARE,
        clock: Callable[[], datetime] = datetime.now,
    ):
        share = to_money(inference_revenue_share)
        if not 0 <= share <= 1:
            raise ValueError("inference_revenue_share must be within [0, 1]")
        self.registry = registry
        self.ad_ledger = ad_ledger
        self.notifier = notifier or Notifier()
        self.inference_revenue_share = share
        self._clock = clock
        self._active: Dict[str, Stream] = {}
        self._closed: Dict[str, Stream] = {}
        self._listeners: List[CloseListener] = []
        self._next_id = 1
        self._lock = RLock()

    def add_close_listener(self, listener: CloseListener) -> None:
        """Register a callback invoked with the summary of every closed stream."""
        self._listeners.append(listener)

    def start(self, provider_id: str, model: str, quality_tier: str = "standard") -> str:
        """Admit a stream on a provider.

        Args:
            provider_id: Provider chosen by the matcher
            model: Requested model
            quality_tier: Requested quality tier

        Returns:
            The new stream id

        Raises:
            NotFoundError: If the provider is unknown
            ModelUnsupportedError: If the provider does not serve the model
            ProviderBusyError: If the provider is no longer IDLE
        """
        with self._lock:
            provider = self.registry.get(provider_id)
            if not provider.supports(model):
                raise ModelUnsupportedError(model, provider_id)

            stream_id = f"stream_{self._next_id}"
            self.registry.mark_streaming(provider_id, stream_id)
            self._next_id += 1
            self._active[stream_id] = Stream(
                id=stream_id,
                provider_id=provider_id,
                model=model,
                quality_tier=quality_tier,
                price_per_token=provider.price_per_token,
                started_at=self._clock(),
            )

        logger.info(
            "Stream started: %s on %s (%s, %s)", stream_id, provider_id, model, quality_tier
        )
        self._notify_provider(provider_id, "stream.started", {
            "stream_id": stream_id, "model": model, "quality_tier": quality_tier,
        })
        self._notify_client(stream_id, {"event": "started", "provider_id": provider_id})
        return stream_id

    def record_usage(self, stream_id: str, tokens_delta: int, latency_ms: float) -> Stream:
        """Add a usage report to an active stream.

        Latency is kept as a running average over usage events.

        Raises:
            NotFoundError: If the stream is unknown
            StreamNotActiveError: If the stream is terminal
            InvalidUsageError: If the delta or latency is negative
        """
        with self._lock:
            stream = self._require_active(stream_id)
            report = UsageReport(tokens_delta, latency_ms)

            stream.usage_events += 1
            stream.tokens_processed += report.tokens_delta
            stream.accrued_revenue += calculate_earnings(
                report.tokens_delta, stream.price_per_token
            )
            stream.observed_latency_ms += (
                (report.latency_ms - stream.observed_latency_ms) / stream.usage_events
            )
            snapshot = replace(stream)

        self._notify_client(stream_id, {
            "event": "usage",
            "tokens": report.tokens_delta,
            "tokens_processed": snapshot.tokens_processed,
        })
        return snapshot

    def stop(self, provider_id: str, stream_id: str) -> StreamSummary:
        """Complete a stream and settle the provider's earnings.

        Raises:
            NotFoundError: If the stream is unknown
            StreamNotActiveError: If the stream is already terminal
            OwnershipMismatchError: If ``provider_id`` does not own the stream
        """
        with self._lock:
            stream = self._require_active(stream_id)
            if stream.provider_id != provider_id:
                raise OwnershipMismatchError(stream_id, provider_id, stream.provider_id)
            summary = self._close(stream, StreamStatus.COMPLETED)

        logger.info(
            "Stream completed: %s, %d tokens, earnings $%s, %.2f tokens/sec",
            stream_id, summary.tokens_processed, summary.earnings, summary.tokens_per_second,
        )
        self._after_close(summary)
        return summary

    def fail(self, stream_id: str, reason: str) -> StreamSummary:
        """Administratively close a stream whose provider went away.

        Only tokens already reported through ``record_usage`` are paid.

        Raises:
            NotFoundError: If the stream is unknown
            StreamNotActiveError: If the stream is already terminal
        """
        with self._lock:
            stream = self._require_active(stream_id)
            summary = self._close(stream, StreamStatus.FAILED, reason)

        logger.warning(
            "Stream failed: %s on %s (%s), %d tokens credited",
            stream_id, summary.provider_id, reason, summary.tokens_processed,
        )
        self._after_close(summary)
        return summary

    def get(self, stream_id: str) -> Stream:
        """Snapshot of an active or closed stream."""
        with self._lock:
            stream = self._active.get(stream_id) or self._closed.get(stream_id)
            if stream is None:
                raise NotFoundError("Stream", stream_id)
            return replace(stream)

    def active_streams(self) -> List[Stream]:
        with self._lock:
            return [replace(s) for s in self._active.values()]

    def history(self) -> List[Stream]:
        """Closed streams in the order they were closed."""
        with self._lock:
            return [replace(s) for s in self._closed.values()]

    def active_stream_for(self, provider_id: str) -> Optional[Stream]:
        with self._lock:
            for stream in self._active.values():
                if stream.provider_id == provider_id:
                    return replace(stream)
            return None

    def _close(
        self, stream: Stream, status: StreamStatus, reason: Optional[str] = None
    ) -> StreamSummary:
        earnings = calculate_earnings(stream.tokens_processed, stream.price_per_token)
        # Raises before anything on the stream changes
        self.registry.release(
            stream.provider_id, stream.id, stream.tokens_processed, earnings
        )

        ended_at = self._clock()
        stream.status = status
        stream.ended_at = ended_at
        stream.failure_reason = reason
        self._closed[stream.id] = self._active.pop(stream.id)
        self.ad_ledger.attribute_inference_revenue(earnings * self.inference_revenue_share)

        duration_ms = max((ended_at - stream.started_at).total_seconds() * 1000, 0.0)
        tokens_per_second = (
            stream.tokens_processed / (duration_ms / 1000) if duration_ms > 0 else 0.0
        )
        return StreamSummary(
            stream_id=stream.id,
            provider_id=stream.provider_id,
            model=stream.model,
            quality_tier=stream.quality_tier,
            status=status,
            tokens_processed=stream.tokens_processed,
            earnings=earnings,
            duration_ms=duration_ms,
            tokens_per_second=tokens_per_second,
            observed_latency_ms=stream.observed_latency_ms,
            started_at=stream.started_at,
            ended_at=ended_at,
            failure_reason=reason,
        )

    def _after_close(self, summary: StreamSummary) -> None:
        event = "stream.completed" if summary.status == StreamStatus.COMPLETED else "stream.failed"
        self._notify_provider(summary.provider_id, event, {
            "stream_id": summary.stream_id,
            "tokens_processed": summary.tokens_processed,
            "earnings": str(summary.earnings),
        })
        self._notify_client(summary.stream_id, {"event": summary.status.value})
        for listener in list(self._listeners):
            try:
                listener(summary)
            except Exception:
                logger.warning(
                    "Close listener failed for stream %s", summary.stream_id, exc_info=True
                )

    def _notify_provider(self, provider_id: str, event: str, payload: dict) -> None:
        try:
            self.notifier.notify_provider(provider_id, event, payload)
        except Exception:
            logger.warning("notify_provider failed for %s (%s)", provider_id, event, exc_info=True)

    def _notify_client(self, stream_id: str, payload: dict) -> None:
        try:
            self.notifier.notify_client(stream_id, payload)
        except Exception:
            logger.warning("notify_client failed for %s", stream_id, exc_info=True)

    def _require_active(self, stream_id: str) -> Stream:
        stream = self._active.get(stream_id)
        if stream is not None:
            return stream
        closed = self._closed.get(stream_id)
        if closed is None:
            raise NotFoundError("Stream", stream_id)
        raise StreamNotActiveError(stream_id, closed.status.value)
