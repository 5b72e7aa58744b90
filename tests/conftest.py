"""Shared fixtures for release-reconciler tests."""

import datetime
import logging

import pytest

from release_reconciler.backend import InMemoryBackend

_LOGGER = logging.getLogger(__name__)


class FakeClock:
    """A clock that moves forward one second on every read."""

    def __init__(self) -> None:
        self.now = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=1)
        return self.now


@pytest.fixture(name="clock")
def mock_clock() -> FakeClock:
    """Fixture for a deterministic clock."""
    return FakeClock()


@pytest.fixture(name="backend")
def mock_backend() -> InMemoryBackend:
    """Fixture for an empty in memory cluster."""
    return InMemoryBackend()
