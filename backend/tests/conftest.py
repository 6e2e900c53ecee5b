"""Shared fixtures for the studio core test suite."""

import pytest

from studio_core import maintenance
from studio_core.asset_cache import AssetCache
from studio_core.asset_store import AssetStoreError, InMemoryAssetStore


# ---------------------------------------------------------------------------
# Autouse fixture: never leak a running scheduler between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_scheduler():
    yield
    maintenance._scheduler = None


# ---------------------------------------------------------------------------
# Deterministic clock
# ---------------------------------------------------------------------------

class TickClock:
    """Clock that advances one second on every read."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


@pytest.fixture()
def clock():
    return TickClock()


# ---------------------------------------------------------------------------
# Stores and caches
# ---------------------------------------------------------------------------

@pytest.fixture()
def memory_store():
    return InMemoryAssetStore()


@pytest.fixture()
def make_cache(memory_store, clock):
    """Factory fixture building an AssetCache over the shared in-memory store."""

    def _factory(*, max_entries: int = 50, max_total_bytes: int = 10 * 1024 * 1024, store=None):
        return AssetCache(
            store if store is not None else memory_store,
            max_entries=max_entries,
            max_total_bytes=max_total_bytes,
            clock=clock,
        )

    return _factory


class FailingAssetStore:
    """Store whose every operation raises, standing in for an unavailable medium."""

    def __init__(self, exc: Exception | None = None) -> None:
        self.exc = exc or AssetStoreError("storage unavailable")

    async def open(self):
        raise self.exc

    async def close(self):
        raise self.exc

    async def get(self, fingerprint):
        raise self.exc

    async def put(self, record):
        raise self.exc

    async def touch(self, fingerprint, stored_at):
        raise self.exc

    async def get_all(self):
        raise self.exc

    async def delete(self, fingerprint):
        raise self.exc

    async def clear(self):
        raise self.exc


@pytest.fixture()
def failing_store():
    return FailingAssetStore()

