"""
Shared fixtures: an in-memory MongoDB and a fixed wall clock.
"""
import pytest
import mongomock

from mongo_pipeline.ingestion.offsets import from_epoch_millis


NOW_MS = 1_700_000_000_000


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms / 1000

    def advance(self, millis: int) -> None:
        self.now_ms += millis


@pytest.fixture
def mongo_client():
    """In-memory MongoDB client."""
    return mongomock.MongoClient()


@pytest.fixture
def client_factory(mongo_client):
    """Client factory that always hands out the shared in-memory client."""
    def factory(uri, **kwargs):
        return mongo_client
    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def at():
    """Datetime for an offset (in ms) from NOW_MS."""
    def _at(delta_ms: int = 0):
        return from_epoch_millis(NOW_MS + delta_ms)
    return _at
