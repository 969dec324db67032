"""Shared fixtures for sitedb tests."""
import pytest
from sitedb.infrastructure.database import SiteDatabase


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that returns immediately and remembers each delay."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def database(tmp_path):
    db = SiteDatabase(str(tmp_path / "site.db"))
    yield db
    db.close()
