"""Shared fixtures for key-delivery tests."""

import pytest

from drmkeys.config import KeyDeliveryConfig
from drmkeys.encryption import primitives
from drmkeys.encryption.envelope import LocalMasterKey
from drmkeys.server.key_server import KeyServer, allow_all
from drmkeys.session.cache import SessionCache
from drmkeys.storage.content_store import InMemoryContentStore


class FakeClock:
    """Manually advanced clock for deterministic TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def master_key():
    return LocalMasterKey(primitives.random_bytes(32))


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def server(master_key, clock):
    return KeyServer(master_key, allow_all, config=KeyDeliveryConfig(),
                     cache=SessionCache(clock=clock), clock=clock)
