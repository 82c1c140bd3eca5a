from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable

Tick = Callable[[], bool]


class Scheduler(ABC):
    """Drives a poll loop: call ``tick`` until it asks to stop."""

    @abstractmethod
    def run(self, tick: Tick) -> int:
        """Run ticks until one returns False; return the number of ticks run."""


class IntervalScheduler(Scheduler):
    def __init__(
        self,
        interval: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.interval = interval
        self.sleep = sleep
        self.should_stop = should_stop

    def run(self, tick: Tick) -> int:
        count = 0
        while True:
            if self.should_stop is not None and self.should_stop():
                return count
            count += 1
            if not tick():
                return count
            self.sleep(self.interval)


class BoundedScheduler(Scheduler):
    """Runs at most ``limit`` ticks back to back without sleeping."""

    def __init__(self, limit: int) -> None:
        self.limit = limit

    def run(self, tick: Tick) -> int:
        count = 0
        while count < self.limit:
            count += 1
            if not tick():
                break
        return count
