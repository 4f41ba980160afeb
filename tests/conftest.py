#!/usr/bin/env python3
"""
Pytest configuration for keeper tests
"""

import pytest

from auction_keeper.registry import ChainRegistry
from auction_keeper.store import AuctionStore, MemoryBackend

from .fakes import CHAINS_CONFIG, FakeClientPool, FakePublisher


@pytest.fixture
def registry():
    return ChainRegistry.from_config(CHAINS_CONFIG)


@pytest.fixture
def store():
    return AuctionStore(MemoryBackend())


@pytest.fixture
def pool(registry):
    return FakeClientPool(registry)


@pytest.fixture
def publisher():
    return FakePublisher()
