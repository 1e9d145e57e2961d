"""
Core modules for Inference Market.

This package contains the provider registry, the matcher, the stream
coordinator, the ad ledger and the analytics rollups.
"""
