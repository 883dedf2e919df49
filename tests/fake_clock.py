"""
fake_clock.py - Test Helper for Time-Dependent Components

A steppable clock that components accept in place of utc_now.
Each call returns the current time and then advances by `step`, so records
created one after another get strictly increasing timestamps.
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional


class FakeClock:
    """
    Deterministic clock for tests.

    Example:
        clock = FakeClock(datetime(2025, 1, 15, tzinfo=timezone.utc))
        engine = SettlementEngine(store, clock=clock)
        clock.advance(days=30)
    """

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta given as keyword arguments."""
        self.now = self.now + timedelta(**kwargs)
        return self.now
