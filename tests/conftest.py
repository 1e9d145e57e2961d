"""
Shared fixtures for the test suite.
"""

from datetime import datetime, timedelta

import pytest

from inference_market.core.ads import AdLedger
from inference_market.core.marketplace import Marketplace
from inference_market.core.registry import Hardware, ProviderRegistry
from inference_market.core.streams import StreamCoordinator


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return ProviderRegistry(clock=clock)


@pytest.fixture
def ad_ledger(clock):
    return AdLedger(clock=clock)


@pytest.fixture
def coordinator(registry, ad_ledger, clock):
    return StreamCoordinator(registry, ad_ledger, clock=clock)


@pytest.fixture
def marketplace(clock):
    return Marketplace(clock=clock)


def make_hardware(vram_gb=24, core_count=8, name="RTX 4090"):
    return Hardware(name=name, vram_gb=vram_gb, core_count=core_count)
