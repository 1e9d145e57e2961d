"""
Provider matching and admission scoring.

Read-only: scores idle, capable providers and returns the best one. The
caller performs the IDLE -> STREAMING transition.

Score = hardware_term + price_term * reliability * quality_multiplier
- hardware_term: vram_gb * 10 + core_count * 5
- price_term: 1000 / (price per ``price_unit_tokens`` tokens)
- reliability: realised earnings per token relative to the advertised price,
  1.0 for providers without history
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List

from .errors import NoProviderAvailableError
from .registry import Provider, ProviderRegistry

DEFAULT_PRICE_UNIT_TOKENS = 1_000_000

QualityOracle = Callable[[str], float]


@dataclass(frozen=True)
class ProviderScore:
    """Score breakdown for one candidate provider."""
    provider: Provider
    hardware_term: float
    price_term: float
    reliability_factor: float
    quality_multiplier: float

    @property
    def score(self) -> float:
        return (self.hardware_term
                + self.price_term * self.reliability_factor * self.quality_multiplier)

    def sort_key(self):
        # Highest score, then lowest price, then oldest registration
        return (
            -self.score,
            self.provider.price_per_token,
            self.provider.registered_at,
            self.provider.id,
        )


def reliability_factor(provider: Provider) -> float:
    """Historical earnings per token, relative to the current price."""
    if provider.total_tokens_served <= 0:
        return 1.0
    realised = provider.total_earnings / Decimal(provider.total_tokens_served)
    return float(realised / provider.price_per_token)


class Matcher:
    """Selects a provider for a model and quality tier."""

    def __init__(
        self,
        registry: ProviderRegistry,
        quality_multiplier: QualityOracle,
        price_unit_tokens: int = DEFAULT_PRICE_UNIT_TOKENS,
    ):
        if price_unit_tokens <= 0:
            raise ValueError("price_unit_tokens must be > 0")
        self.registry = registry
        self.quality_multiplier = quality_multiplier
        self.price_unit_tokens = price_unit_tokens

    def score_provider(self, provider: Provider, quality_tier: str) -> ProviderScore:
        """Compute the score breakdown of a single provider."""
        hardware = provider.hardware
        unit_price = provider.price_per_token * Decimal(self.price_unit_tokens)
        return ProviderScore(
            provider=provider,
            hardware_term=float(hardware.vram_gb) * 10 + hardware.core_count * 5,
            price_term=float(Decimal(1000) / unit_price),
            reliability_factor=reliability_factor(provider),
            quality_multiplier=self.quality_multiplier(quality_tier),
        )

    def score_candidates(self, model: str, quality_tier: str) -> List[ProviderScore]:
        """Score every idle, capable provider, best first."""
        candidates = self.registry.list_idle_capable(model)
        scores = [self.score_provider(p, quality_tier) for p in candidates]
        return sorted(scores, key=ProviderScore.sort_key)

    def find_provider(self, model: str, quality_tier: str = "standard") -> Provider:
        """Return the best idle provider for a request.

        Deterministic for identical registry state. Ties on score go to the
        lower price, then to the earlier registration.

        Args:
            model: Requested model name
            quality_tier: Requested quality tier

        Returns:
            Snapshot of the selected provider

        Raises:
            NoProviderAvailableError: If no idle provider serves the model
        """
        ranked = self.score_candidates(model, quality_tier)
        if not ranked:
            raise NoProviderAvailableError(model, quality_tier)
        return ranked[0].provider
