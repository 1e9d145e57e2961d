"""
Read-only rollups over providers, streams and revenue.

Nothing in this module mutates marketplace state.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from .ads import AdLedger
from .registry import ProviderRegistry, ProviderStatus
from .streams import Stream, StreamCoordinator, StreamStatus


@dataclass(frozen=True)
class SystemStatus:
    """Headline counters for dashboards."""
    total_providers: int
    idle_providers: int
    streaming_providers: int
    active_streams: int
    total_revenue: Decimal
    total_tokens_served: int
    average_latency_ms: float


@dataclass(frozen=True)
class ProviderStanding:
    provider_id: str
    hardware_name: str
    earnings: Decimal
    tokens_served: int


@dataclass(frozen=True)
class ProviderAnalytics:
    total_providers: int
    total_earnings: Decimal
    total_tokens_served: int
    average_earnings_per_provider: Decimal
    average_tokens_per_provider: float
    top_providers: List[ProviderStanding] = field(default_factory=list)


@dataclass(frozen=True)
class StreamAnalytics:
    completed_streams: int
    failed_streams: int
    total_tokens: int
    median_latency_ms: Optional[float]
    p90_latency_ms: Optional[float]


@dataclass(frozen=True)
class AdStanding:
    ad_id: str
    category: str
    revenue: Decimal
    impressions: int
    clicks: int
    ctr: float


@dataclass(frozen=True)
class CategoryTotals:
    revenue: Decimal
    impressions: int
    clicks: int


@dataclass(frozen=True)
class RevenueAnalytics:
    total: Decimal
    ad_total: Decimal
    inference_total: Decimal
    today: Decimal
    yesterday: Decimal
    top_ads: List[AdStanding]
    category_breakdown: Dict[str, CategoryTotals]


def system_status(
    registry: ProviderRegistry,
    coordinator: StreamCoordinator,
    ad_ledger: AdLedger,
) -> SystemStatus:
    """Counts of providers by status, active streams and revenue to date."""
    counts = registry.count_by_status()
    providers = registry.all_providers(include_removed=True)
    closed = coordinator.history()
    latencies = [s.observed_latency_ms for s in closed if s.usage_events > 0]
    return SystemStatus(
        total_providers=counts[ProviderStatus.IDLE] + counts[ProviderStatus.STREAMING],
        idle_providers=counts[ProviderStatus.IDLE],
        streaming_providers=counts[ProviderStatus.STREAMING],
        active_streams=len(coordinator.active_streams()),
        total_revenue=ad_ledger.revenue_ledger.grand_total,
        total_tokens_served=sum(p.total_tokens_served for p in providers),
        average_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
    )


def provider_analytics(registry: ProviderRegistry, top_n: int = 5) -> ProviderAnalytics:
    """Earnings and token totals across providers, with the top earners."""
    providers = registry.all_providers()
    total_earnings = sum((p.total_earnings for p in providers), Decimal(0))
    total_tokens = sum(p.total_tokens_served for p in providers)
    count = len(providers)

    ranked = sorted(providers, key=lambda p: (-p.total_earnings, p.registered_at))
    return ProviderAnalytics(
        total_providers=count,
        total_earnings=total_earnings,
        total_tokens_served=total_tokens,
        average_earnings_per_provider=total_earnings / count if count else Decimal(0),
        average_tokens_per_provider=total_tokens / count if count else 0.0,
        top_providers=[
            ProviderStanding(p.id, p.hardware.name, p.total_earnings, p.total_tokens_served)
            for p in ranked[:top_n]
        ],
    )


def stream_analytics(history: List[Stream]) -> StreamAnalytics:
    """Outcome counts and latency percentiles of closed streams."""
    latencies = [s.observed_latency_ms for s in history if s.usage_events > 0]
    return StreamAnalytics(
        completed_streams=sum(1 for s in history if s.status == StreamStatus.COMPLETED),
        failed_streams=sum(1 for s in history if s.status == StreamStatus.FAILED),
        total_tokens=sum(s.tokens_processed for s in history),
        median_latency_ms=compute_percentile(latencies, 50) if latencies else None,
        p90_latency_ms=compute_percentile(latencies, 90) if latencies else None,
    )


def revenue_analytics(ad_ledger: AdLedger, top_n: int = 5) -> RevenueAnalytics:
    """Ledger totals, today/yesterday buckets, top ads and per-category sums."""
    today = ad_ledger.today()
    ledger = ad_ledger.revenue_ledger
    ads = ad_ledger.inventory()

    breakdown: Dict[str, CategoryTotals] = {}
    for ad in ads:
        current = breakdown.get(ad.category, CategoryTotals(Decimal(0), 0, 0))
        breakdown[ad.category] = CategoryTotals(
            revenue=current.revenue + ad.revenue,
            impressions=current.impressions + ad.impressions,
            clicks=current.clicks + ad.clicks,
        )

    ranked = sorted(ads, key=lambda a: (-a.revenue, a.id))
    return RevenueAnalytics(
        total=ledger.grand_total,
        ad_total=ledger.ad_total,
        inference_total=ledger.inference_total,
        today=ad_ledger.revenue_on(today),
        yesterday=ad_ledger.revenue_on(today - timedelta(days=1)),
        top_ads=[
            AdStanding(a.id, a.category, a.revenue, a.impressions, a.clicks, a.ctr)
            for a in ranked[:top_n]
        ],
        category_breakdown=breakdown,
    )


def compute_percentile(values: List[float], percentile: int) -> float:
    """Exact percentile using linear interpolation between closest ranks.

    Args:
        values: Numeric values
        percentile: Percentile to compute (0-100)

    Returns:
        Interpolated percentile value
    """
    if not values:
        raise ValueError("Values list cannot be empty")
    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    position = (percentile / 100.0) * (len(sorted_values) - 1)
    lower_index = int(position)
    upper_index = min(lower_index + 1, len(sorted_values) - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + fraction * (upper_value - lower_value)
