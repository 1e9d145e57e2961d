"""
SDK for Inference Market.

Runs chat completions on marketplace providers as metered streams.
"""

from .openai_client import MarketplaceOpenAI

__all__ = ["MarketplaceOpenAI"]
