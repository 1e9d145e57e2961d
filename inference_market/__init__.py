"""
Inference Market.

Matches inference requests to independently owned LLM providers, meters each
stream, and reconciles provider payouts against ad revenue.
"""

__version__ = "0.1.0"
