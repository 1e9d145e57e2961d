"""
Data models for storage layer.

Defines the persisted shape of closed streams.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from inference_market.core.streams import StreamSummary


@dataclass(frozen=True)
class StreamRecord:
    """Immutable record of a closed stream.

    Append-only rows forming an auditable history of provider payouts.
    Once written, these records must never be modified.
    """
    stream_id: str
    provider_id: str
    model: str
    quality_tier: str
    status: str
    tokens_processed: int
    earnings: str  # Decimal as text, so no precision is lost in SQLite
    duration_ms: float
    observed_latency_ms: float
    started_at: datetime
    ended_at: datetime
    failure_reason: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: StreamSummary) -> "StreamRecord":
        return cls(
            stream_id=summary.stream_id,
            provider_id=summary.provider_id,
            model=summary.model,
            quality_tier=summary.quality_tier,
            status=summary.status.value,
            tokens_processed=summary.tokens_processed,
            earnings=str(summary.earnings),
            duration_ms=summary.duration_ms,
            observed_latency_ms=summary.observed_latency_ms,
            started_at=summary.started_at,
            ended_at=summary.ended_at,
            failure_reason=summary.failure_reason,
        )
