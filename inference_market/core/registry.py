"""
Provider registry and provider state machine.

Single source of truth for whether a provider is idle, streaming or removed.
The registry knows nothing about economics beyond the running totals it is
asked to credit when a stream is released.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from threading import RLock
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from .errors import (
    EmptyCapabilitySetError,
    InvalidPricingError,
    NotFoundError,
    ProviderBusyError,
)
from .pricing import Number, to_money

logger = logging.getLogger(__name__)


class ProviderStatus(Enum):
    """Lifecycle states of a provider."""
    IDLE = "idle"
    STREAMING = "streaming"
    REMOVED = "removed"


@dataclass(frozen=True)
class Hardware:
    """Hardware a provider contributes."""
    name: str
    vram_gb: float
    core_count: int

    def __post_init__(self):
        """Validate hardware figures are non-negative."""
        if self.vram_gb < 0:
            raise ValueError("vram_gb cannot be negative")
        if self.core_count < 0:
            raise ValueError("core_count cannot be negative")


@dataclass
class Provider:
    """Identity, capability and running totals of one compute contributor."""
    id: str
    hardware: Hardware
    supported_models: FrozenSet[str]
    price_per_token: Decimal
    registered_at: datetime
    status: ProviderStatus = ProviderStatus.IDLE
    current_stream_id: Optional[str] = None
    total_earnings: Decimal = field(default_factory=Decimal)
    total_tokens_served: int = 0
    endpoint: Optional[str] = None

    def supports(self, model: str) -> bool:
        return model in self.supported_models


class ProviderRegistry:
    """In-memory provider table.

    Every public method runs as one critical section under the registry lock
    and hands out copies, so no caller can observe or cause a half-applied
    transition.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._providers: Dict[str, Provider] = {}
        self._next_id = 1
        self._clock = clock
        self._lock = RLock()

    def register(
        self,
        hardware: Hardware,
        capabilities: Iterable[str],
        pricing: Number,
        endpoint: Optional[str] = None,
    ) -> str:
        """Register a provider in IDLE status.

        Args:
            hardware: Hardware description
            capabilities: Model names the provider can serve
            pricing: Price per token
            endpoint: Optional OpenAI-compatible base URL of the provider

        Returns:
            The new provider id

        Raises:
            InvalidPricingError: If the price is not > 0
            EmptyCapabilitySetError: If no model is declared
        """
        price = _validate_price(pricing)
        models = frozenset(m.strip() for m in capabilities if m and m.strip())
        if not models:
            raise EmptyCapabilitySetError()

        with self._lock:
            provider_id = f"provider_{self._next_id}"
            self._next_id += 1
            self._providers[provider_id] = Provider(
                id=provider_id,
                hardware=hardware,
                supported_models=models,
                price_per_token=price,
                registered_at=self._clock(),
                endpoint=endpoint,
            )

        logger.info(
            "Provider registered: %s (%s, %sGB VRAM, models=%s, $%s/token)",
            provider_id, hardware.name, hardware.vram_gb, sorted(models), price,
        )
        return provider_id

    def get(self, provider_id: str) -> Provider:
        """Snapshot of a provider.

        Raises:
            NotFoundError: If the id is unknown
        """
        with self._lock:
            return replace(self._require(provider_id))

    def list_idle_capable(self, model: str) -> List[Provider]:
        """Snapshots of all IDLE providers that serve ``model``, oldest first."""
        with self._lock:
            return [
                replace(p) for p in self._providers.values()
                if p.status == ProviderStatus.IDLE and p.supports(model)
            ]

    def supports_model(self, model: str) -> bool:
        """Whether any provider that has not been removed declares ``model``."""
        with self._lock:
            return any(
                p.status != ProviderStatus.REMOVED and p.supports(model)
                for p in self._providers.values()
            )

    def mark_streaming(self, provider_id: str, stream_id: str) -> None:
        """Atomically move a provider from IDLE to STREAMING.

        Raises:
            NotFoundError: If the id is unknown
            ProviderBusyError: If the provider is not IDLE
        """
        with self._lock:
            provider = self._require(provider_id)
            if provider.status != ProviderStatus.IDLE:
                raise ProviderBusyError(provider_id, provider.status.value)
            provider.status = ProviderStatus.STREAMING
            provider.current_stream_id = stream_id

    def mark_idle(self, provider_id: str) -> None:
        """Move a STREAMING provider back to IDLE, clearing its stream.

        Raises:
            NotFoundError: If the id is unknown
        """
        with self._lock:
            provider = self._require(provider_id)
            if provider.status == ProviderStatus.STREAMING:
                provider.status = ProviderStatus.IDLE
                provider.current_stream_id = None

    def release(
        self,
        provider_id: str,
        stream_id: str,
        tokens: int,
        earnings: Decimal,
    ) -> None:
        """Credit a closed stream's totals and return the provider to IDLE.

        Both effects are applied together or not at all.

        Raises:
            NotFoundError: If the id is unknown
            ProviderBusyError: If the provider is not streaming ``stream_id``
        """
        if tokens < 0 or earnings < 0:
            raise ValueError("released tokens and earnings must be >= 0")
        with self._lock:
            provider = self._require(provider_id)
            if (provider.status != ProviderStatus.STREAMING
                    or provider.current_stream_id != stream_id):
                raise ProviderBusyError(provider_id, provider.status.value)
            provider.total_earnings += earnings
            provider.total_tokens_served += tokens
            provider.status = ProviderStatus.IDLE
            provider.current_stream_id = None

    def update_pricing(self, provider_id: str, pricing: Number) -> None:
        """Change the advertised price of an IDLE provider.

        Raises:
            InvalidPricingError: If the price is not > 0
            NotFoundError: If the id is unknown
            ProviderBusyError: If the provider is not IDLE
        """
        price = _validate_price(pricing)
        with self._lock:
            provider = self._require(provider_id)
            if provider.status != ProviderStatus.IDLE:
                raise ProviderBusyError(provider_id, provider.status.value)
            provider.price_per_token = price
        logger.info("Provider %s repriced to $%s/token", provider_id, price)

    def remove(self, provider_id: str) -> None:
        """Mark a provider REMOVED.

        A streaming provider must have its stream closed first. Removing an
        already removed provider is a no-op.

        Raises:
            NotFoundError: If the id is unknown
            ProviderBusyError: If the provider is STREAMING
        """
        with self._lock:
            provider = self._require(provider_id)
            if provider.status == ProviderStatus.STREAMING:
                raise ProviderBusyError(provider_id, provider.status.value)
            if provider.status == ProviderStatus.REMOVED:
                return
            provider.status = ProviderStatus.REMOVED
        logger.info("Provider removed: %s", provider_id)

    def all_providers(self, include_removed: bool = False) -> List[Provider]:
        """Snapshots of every provider in registration order."""
        with self._lock:
            return [
                replace(p) for p in self._providers.values()
                if include_removed or p.status != ProviderStatus.REMOVED
            ]

    def available_models(self) -> List[str]:
        """Sorted union of models declared by non-removed providers."""
        models = set()
        for provider in self.all_providers():
            models.update(provider.supported_models)
        return sorted(models)

    def count_by_status(self) -> Dict[ProviderStatus, int]:
        """Number of providers in each status."""
        with self._lock:
            counts = {status: 0 for status in ProviderStatus}
            for provider in self._providers.values():
                counts[provider.status] += 1
            return counts

    def _require(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFoundError("Provider", provider_id)
        return provider


def _validate_price(pricing: Number) -> Decimal:
    try:
        price = to_money(pricing)
    except (ArithmeticError, TypeError, ValueError):
        raise InvalidPricingError(pricing)
    if not price.is_finite() or price <= 0:
        raise InvalidPricingError(pricing)
    return price
