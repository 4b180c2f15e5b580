"""
Shared fixtures.
"""
import pytest


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()
