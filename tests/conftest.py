"""Shared fixtures."""

import pytest


class FakeClock:
    """Stands in for the ``time`` module used by sticky_builder.retry.

    ``sleep`` advances the clock instead of blocking and records each call.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock(monkeypatch):
    """Replace wall-clock waits with a fake clock."""
    clock = FakeClock()
    monkeypatch.setattr("sticky_builder.retry.time", clock)
    return clock
