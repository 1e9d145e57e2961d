"""
Quality tiers and money arithmetic.

Quality multipliers feed provider scoring; earnings are computed in Decimal.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Union

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class QualityLevel:
    """One requestable quality tier."""
    name: str
    multiplier: float  # Weight applied to the price term of a provider score
    description: str = ""

    def __post_init__(self):
        """Validate the multiplier is positive."""
        if self.multiplier <= 0:
            raise ValueError(f"quality multiplier for '{self.name}' must be > 0")


@dataclass(frozen=True)
class QualityTable:
    """Fixed set of quality tiers with a fallback tier."""
    levels: Dict[str, QualityLevel]
    fallback: str = "standard"

    def get_level(self, tier: str) -> QualityLevel:
        """Get the level for a tier.

        Unknown tiers resolve to the fallback tier rather than failing, so a
        client asking for an unlisted tier is served at standard quality.

        Args:
            tier: Quality tier name

        Returns:
            QualityLevel for the tier
        """
        if tier in self.levels:
            return self.levels[tier]
        return self.levels[self.fallback]

    def multiplier(self, tier: str) -> float:
        """Quality multiplier for a tier (the oracle consumed by the matcher)."""
        return self.get_level(tier).multiplier


DEFAULT_QUALITY_TABLE = QualityTable({
    "low": QualityLevel("low", 0.7, "Fast inference with basic quality"),
    "standard": QualityLevel("standard", 1.0, "Balanced performance and quality"),
    "high": QualityLevel("high", 1.3, "Enhanced quality with moderate performance impact"),
    "ultra": QualityLevel("ultra", 1.6, "Maximum quality with significant performance impact"),
})


def to_money(value: Number) -> Decimal:
    """Convert a price or amount to Decimal without binary float drift.

    Floats go through ``str`` so that ``0.0002`` becomes ``Decimal("0.0002")``
    rather than its nearest binary approximation.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def calculate_earnings(tokens: int, price_per_token: Decimal) -> Decimal:
    """Exact provider earnings for a number of tokens.

    Args:
        tokens: Tokens processed (>= 0)
        price_per_token: Provider's advertised price

    Returns:
        tokens * price_per_token, unrounded

    Raises:
        ValueError: If tokens is negative
    """
    if tokens < 0:
        raise ValueError("tokens cannot be negative")
    return Decimal(tokens) * price_per_token
