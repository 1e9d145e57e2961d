"""
Usage reports sent by providers while a stream is active.

Carries exact token counts and latency as reported, without estimation.
"""

from dataclasses import dataclass

from .errors import InvalidUsageError


@dataclass(frozen=True)
class UsageReport:
    """One usage event for an active stream."""
    tokens_delta: int
    latency_ms: float

    def __post_init__(self):
        """Reject negative deltas and latencies."""
        if isinstance(self.tokens_delta, bool) or not isinstance(self.tokens_delta, int):
            raise InvalidUsageError(f"tokens_delta must be an integer, got {self.tokens_delta!r}")
        if self.tokens_delta < 0:
            raise InvalidUsageError(f"tokens_delta cannot be negative: {self.tokens_delta}")
        if self.latency_ms < 0:
            raise InvalidUsageError(f"latency_ms cannot be negative: {self.latency_ms}")
