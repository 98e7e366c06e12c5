"""
Shared fixtures: a fixed "now", a manual clock for the cache and a sleep
that records requested delays instead of waiting.
"""

from datetime import datetime, timezone

import pytest


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class ManualClock:
    def __init__(self, start: float = 1_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class ScriptedComps:
    """Comp source that returns a scripted sequence of results, one per call."""

    def __init__(self, *results, default=None):
        self.results = list(results)
        self.default = [] if default is None else default
        self.calls: list[str] = []

    async def search(self, asset_id: str):
        self.calls.append(asset_id)
        if self.results:
            result = self.results.pop(0)
        else:
            result = self.default
        if isinstance(result, Exception):
            raise result
        return result


def sale(price, when, **extra):
    return {"price": price, "date": when.isoformat(), **extra}


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sleep():
    return RecordingSleep()
