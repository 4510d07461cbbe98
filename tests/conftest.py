from __future__ import annotations

from typing import List

import pytest


class FakeClock:
    """Integer-nanosecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000_000):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += round(seconds * 1_000_000_000)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
