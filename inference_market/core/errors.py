"""
Error kinds raised by the marketplace core.

Every failure is local and synchronous; callers decide whether to retry.
"""

from typing import Optional


class MarketplaceError(Exception):
    """Base class for all typed marketplace failures."""


class NotFoundError(MarketplaceError):
    """Raised when an id does not resolve to a known entity."""
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ProviderBusyError(MarketplaceError):
    """Raised when a provider is not in the state a transition requires."""
    def __init__(self, provider_id: str, status: str):
        super().__init__(f"Provider {provider_id} is busy (status: {status})")
        self.provider_id = provider_id
        self.status = status


class ModelUnsupportedError(MarketplaceError):
    """Raised when no provider (or not the chosen one) serves a model."""
    def __init__(self, model: str, provider_id: Optional[str] = None):
        if provider_id is None:
            message = f"No registered provider supports model: {model}"
        else:
            message = f"Provider {provider_id} does not support model: {model}"
        super().__init__(message)
        self.model = model
        self.provider_id = provider_id


class InvalidPricingError(MarketplaceError):
    """Raised when a price per token is not strictly positive."""
    def __init__(self, price):
        super().__init__(f"price_per_token must be > 0, got {price}")
        self.price = price


class EmptyCapabilitySetError(MarketplaceError):
    """Raised when a provider registers without any supported model."""
    def __init__(self):
        super().__init__("Provider must declare at least one supported model")


class NoProviderAvailableError(MarketplaceError):
    """Raised when no idle provider can serve a request right now."""
    def __init__(self, model: str, quality_tier: str):
        super().__init__(f"No available provider for {model} ({quality_tier})")
        self.model = model
        self.quality_tier = quality_tier


class StreamNotActiveError(MarketplaceError):
    """Raised when a stream is already terminal."""
    def __init__(self, stream_id: str, status: str):
        super().__init__(f"Stream {stream_id} is not active (status: {status})")
        self.stream_id = stream_id
        self.status = status


class InvalidUsageError(MarketplaceError):
    """Raised for negative token deltas, latencies or revenue amounts."""


class OwnershipMismatchError(MarketplaceError):
    """Raised when a provider tries to stop a stream it does not own."""
    def __init__(self, stream_id: str, provider_id: str, owner_id: str):
        super().__init__(
            f"Stream {stream_id} belongs to {owner_id}, not {provider_id}"
        )
        self.stream_id = stream_id
        self.provider_id = provider_id
        self.owner_id = owner_id
