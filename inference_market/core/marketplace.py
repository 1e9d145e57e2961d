"""
Marketplace facade.

Wires the registry, matcher, stream coordinator and ad ledger together and
exposes the operations an API layer or dashboard calls.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .ads import AdLedger
from .analytics import (
    ProviderAnalytics,
    RevenueAnalytics,
    StreamAnalytics,
    SystemStatus,
    provider_analytics,
    revenue_analytics,
    stream_analytics,
    system_status,
)
from .errors import (
    ModelUnsupportedError,
    NoProviderAvailableError,
    ProviderBusyError,
    StreamNotActiveError,
)
from .matcher import DEFAULT_PRICE_UNIT_TOKENS, Matcher, QualityOracle
from .pricing import DEFAULT_QUALITY_TABLE, Number
from .registry import Hardware, ProviderRegistry
from .streams import Stream, StreamCoordinator, StreamSummary
from .transport import Notifier
from inference_market.storage.repository import StreamHistoryRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamHandle:
    """Identifiers returned to a client whose request was admitted."""
    stream_id: str
    provider_id: str


class Marketplace:
    """Entry point for provider registration, admission, metering and ads."""

    def __init__(
        self,
        quality_multiplier: QualityOracle = DEFAULT_QUALITY_TABLE.multiplier,
        ad_ledger: Optional[AdLedger] = None,
        notifier: Optional[Notifier] = None,
        price_unit_tokens: int = DEFAULT_PRICE_UNIT_TOKENS,
        max_admission_attempts: int = 3,
        inference_revenue_share: Number = "0.1",
        clock: Callable[[], datetime] = datetime.now,
    ):
        if max_admission_attempts < 1:
            raise ValueError("max_admission_attempts must be >= 1")
        self.registry = ProviderRegistry(clock=clock)
        self.ad_ledger = ad_ledger or AdLedger(clock=clock)
        self.matcher = Matcher(self.registry, quality_multiplier, price_unit_tokens)
        self.coordinator = StreamCoordinator(
            self.registry,
            self.ad_ledger,
            notifier=notifier,
            inference_revenue_share=inference_revenue_share,
            clock=clock,
        )
        self.max_admission_attempts = max_admission_attempts

    @classmethod
    def from_config(cls, config, notifier: Optional[Notifier] = None,
                    clock: Callable[[], datetime] = datetime.now) -> "Marketplace":
        """Build a marketplace from a ``MarketplaceConfig``.

        When the config names a database, closed streams are appended to the
        stream history there.
        """
        ad_ledger = AdLedger(
            inventory=config.ads.inventory,
            cooldown_ms=config.ads.cooldown_ms,
            relevance_floor=config.ads.relevance_floor,
            default_categories=config.ads.default_categories,
            clock=clock,
        )
        marketplace = cls(
            quality_multiplier=config.quality.multiplier,
            ad_ledger=ad_ledger,
            notifier=notifier,
            price_unit_tokens=config.matching.price_unit_tokens,
            max_admission_attempts=config.matching.max_admission_attempts,
            inference_revenue_share=config.revenue.inference_share,
            clock=clock,
        )
        if config.db_path:
            repository = StreamHistoryRepository(config.db_path)
            repository.initialize()
            marketplace.coordinator.add_close_listener(repository.record_summary)
        return marketplace

    def register_provider(
        self,
        hardware: Hardware,
        capabilities: Iterable[str],
        pricing: Number,
        endpoint: Optional[str] = None,
    ) -> str:
        return self.registry.register(hardware, capabilities, pricing, endpoint)

    def request_stream(self, model: str, quality_tier: str = "standard") -> StreamHandle:
        """Match a provider and admit a stream on it.

        If another request claims the matched provider first, matching runs
        again, up to ``max_admission_attempts`` times.

        Raises:
            ModelUnsupportedError: If no registered provider serves the model
            NoProviderAvailableError: If every capable provider is busy
        """
        if not self.registry.supports_model(model):
            raise ModelUnsupportedError(model)

        for attempt in range(1, self.max_admission_attempts + 1):
            provider = self.matcher.find_provider(model, quality_tier)
            try:
                stream_id = self.coordinator.start(provider.id, model, quality_tier)
            except ProviderBusyError:
                logger.info(
                    "Lost admission race for %s (attempt %d/%d)",
                    provider.id, attempt, self.max_admission_attempts,
                )
                continue
            return StreamHandle(stream_id=stream_id, provider_id=provider.id)

        raise NoProviderAvailableError(model, quality_tier)

    def report_usage(self, stream_id: str, tokens_delta: int, latency_ms: float) -> Stream:
        return self.coordinator.record_usage(stream_id, tokens_delta, latency_ms)

    def end_stream(self, provider_id: str, stream_id: str) -> StreamSummary:
        return self.coordinator.stop(provider_id, stream_id)

    def fail_stream(self, stream_id: str, reason: str) -> StreamSummary:
        return self.coordinator.fail(stream_id, reason)

    def remove_provider(self, provider_id: str) -> Optional[StreamSummary]:
        """Remove a provider, failing its active stream first.

        A request admitted onto the provider between the two steps is failed
        as well, until the provider can be removed while idle.

        Returns:
            Summary of the last force-closed stream, if there was one
        """
        summary = None
        while True:
            stream = self.coordinator.active_stream_for(provider_id)
            if stream is not None:
                try:
                    summary = self.coordinator.fail(stream.id, "provider removed")
                except StreamNotActiveError:
                    continue
            try:
                self.registry.remove(provider_id)
            except ProviderBusyError:
                logger.info("Provider %s was re-admitted during removal, retrying", provider_id)
                continue
            return summary

    def inject_ad(
        self,
        prompt: str,
        user_id: str,
        ad_preferences: Optional[dict] = None,
    ) -> str:
        return self.ad_ledger.inject_ad(prompt, user_id, ad_preferences)

    def record_ad_click(self, ad_id: str):
        return self.ad_ledger.record_click(ad_id)

    def available_models(self) -> List[str]:
        return self.registry.available_models()

    def get_system_status(self) -> SystemStatus:
        return system_status(self.registry, self.coordinator, self.ad_ledger)

    def get_provider_analytics(self, top_n: int = 5) -> ProviderAnalytics:
        return provider_analytics(self.registry, top_n)

    def get_stream_analytics(self) -> StreamAnalytics:
        return stream_analytics(self.coordinator.history())

    def get_revenue_analytics(self, top_n: int = 5) -> RevenueAnalytics:
        return revenue_analytics(self.ad_ledger, top_n)
