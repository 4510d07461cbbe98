"""Token bucket that fills lazily at a fixed rate.

See https://en.wikipedia.org/wiki/Token_bucket.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from datetime import timedelta
from typing import Callable, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
Sleeper = Callable[[float], None]
Interval = Union[float, int, timedelta]

NS_PER_SECOND = 1_000_000_000

# Allowed relative deviation of the fitted rate from the requested one.
RATE_MARGIN = 0.01

MAX_QUANTUM = 1 << 50


def _interval_ns(fill_interval: Interval) -> int:
    if isinstance(fill_interval, timedelta):
        fill_interval = fill_interval.total_seconds()
    if not math.isfinite(fill_interval):
        raise ValueError(f"token bucket fill interval is not finite: {fill_interval!r}")
    return round(fill_interval * NS_PER_SECOND)


def _check_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"token bucket {name} must be an int, got {type(value).__name__}")


def next_quantum(q: int) -> int:
    """Next quantum to try after q.

    Grows by 10% so low rates get a good fit with small quanta.
    """
    q1 = q * 11 // 10
    if q1 == q:
        q1 += 1
    return q1


class Bucket:
    """Token bucket that fills with ``quantum`` tokens every ``fill_interval``.

    - fill_interval: seconds (or timedelta) per tick, must be > 0
    - capacity: max tokens the bucket can hold, must be > 0
    - quantum: tokens added per tick, must be > 0

    The bucket starts full. Methods may be called concurrently from many
    threads; the lock is only held while tokens are accounted, never while
    a caller sleeps.
    """

    def __init__(
        self,
        fill_interval: Interval,
        capacity: int,
        quantum: int = 1,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self._setup(_interval_ns(fill_interval), capacity, quantum, clock, sleep)

    def _setup(
        self,
        fill_interval_ns: int,
        capacity: int,
        quantum: int,
        clock: Optional[Clock],
        sleep: Optional[Sleeper],
    ) -> None:
        _check_int("capacity", capacity)
        _check_int("quantum", quantum)
        if fill_interval_ns <= 0:
            raise ValueError("token bucket fill interval is not > 0")
        if capacity <= 0:
            raise ValueError("token bucket capacity is not > 0")
        if quantum <= 0:
            raise ValueError("token bucket quantum is not > 0")
        self._clock: Clock = clock or time.monotonic_ns
        self._sleep: Sleeper = sleep or time.sleep
        self._fill_interval = fill_interval_ns
        self._capacity = capacity
        self._quantum = quantum
        self._start_time = self._clock()

        # The lock guards the fields below.
        self._lock = threading.Lock()
        # Tokens available as of _avail_tick ticks from _start_time.
        # Negative while takers are waiting on tokens.
        self._avail = capacity
        self._avail_tick = 0

    @classmethod
    def with_rate(
        cls,
        rate: float,
        capacity: int,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> "Bucket":
        """Bucket filling at ``rate`` tokens per second.

        Clock resolution is nanoseconds, so at high rates the fitted rate may
        differ from the requested one by up to 1%.
        """
        if not rate > 0:
            raise ValueError(f"token bucket rate is not > 0: {rate!r}")
        if not math.isfinite(rate):
            raise ValueError(f"token bucket rate is not finite: {rate!r}")
        quantum = 1
        while quantum < MAX_QUANTUM:
            interval = NS_PER_SECOND * quantum / rate
            if not math.isfinite(interval):
                raise ValueError(f"token bucket rate is too small: {rate!r}")
            fill_interval = int(interval)
            if fill_interval > 0:
                actual = NS_PER_SECOND * quantum / fill_interval
                if abs(actual - rate) / rate <= RATE_MARGIN:
                    bucket = cls.__new__(cls)
                    bucket._setup(fill_interval, capacity, quantum, clock, sleep)
                    logger.debug(
                        "Fitted rate %g/s with quantum=%d fill_interval=%dns (actual %g/s)",
                        rate,
                        quantum,
                        fill_interval,
                        actual,
                    )
                    return bucket
            quantum = next_quantum(quantum)
        raise ValueError(f"cannot find suitable quantum for {rate!r}")

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def quantum(self) -> int:
        return self._quantum

    @property
    def fill_interval(self) -> float:
        """Seconds per tick."""
        return self._fill_interval / NS_PER_SECOND

    @property
    def rate(self) -> float:
        """Fill rate in tokens per second."""
        return NS_PER_SECOND * self._quantum / self._fill_interval

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(capacity={self._capacity}, quantum={self._quantum}, "
            f"fill_interval={self.fill_interval!r}, rate={self.rate:g})"
        )

    def wait(self, count: int) -> None:
        """Take count tokens, sleeping until they are available."""
        d = self.take(count)
        if d > 0:
            logger.debug("Waiting %.6fs for %d tokens", d, count)
            self._sleep(d)

    async def wait_async(self, count: int) -> None:
        """Like wait, but suspends the running task instead of the thread."""
        d = self.take(count)
        if d > 0:
            logger.debug("Waiting %.6fs for %d tokens", d, count)
            await asyncio.sleep(d)

    def take(self, count: int) -> float:
        """Take count tokens without blocking.

        Returns the seconds the caller should wait until the tokens are
        actually available. The request is irrevocable: there is no way to
        return tokens once they have been taken.
        """
        d, _ = self._take(self._clock(), count, None)
        return d

    def take_max_duration(self, count: int, max_wait: float) -> Tuple[float, bool]:
        """Take count tokens only if they are available within max_wait seconds.

        Returns (wait, True) when the tokens were taken, otherwise (0.0, False)
        and the bucket is left as it was.
        """
        return self._take(self._clock(), count, round(max_wait * NS_PER_SECOND))

    def wait_max_duration(self, count: int, max_wait: float) -> bool:
        d, ok = self.take_max_duration(count, max_wait)
        if ok and d > 0:
            logger.debug("Waiting %.6fs for %d tokens", d, count)
            self._sleep(d)
        return ok

    def take_available(self, count: int) -> int:
        """Take up to count immediately available tokens.

        Returns the number of tokens removed, or 0 if none are available.
        Never blocks.
        """
        if count <= 0:
            return 0
        with self._lock:
            self._adjust(self._clock())
            if self._avail <= 0:
                return 0
            if count > self._avail:
                count = self._avail
            self._avail -= count
            return count

    def available(self) -> int:
        """Tokens available right now; negative while takers are waiting."""
        with self._lock:
            self._adjust(self._clock())
            return self._avail

    def _take(self, now: int, count: int, max_wait: Optional[int]) -> Tuple[float, bool]:
        if count <= 0:
            return 0.0, True
        with self._lock:
            current_tick = self._adjust(now)
            avail = self._avail - count
            if avail >= 0:
                self._avail = avail
                return 0.0, True
            # Missing tokens arrive whole quanta at a time, so round the
            # deficit up to the tick that delivers them.
            end_tick = current_tick + (-avail + self._quantum - 1) // self._quantum
            end_time = self._start_time + end_tick * self._fill_interval
            wait_ns = end_time - now
            if max_wait is not None and wait_ns > max_wait:
                return 0.0, False
            self._avail = avail
            return wait_ns / NS_PER_SECOND, True

    def _adjust(self, now: int) -> int:
        """Refill the bucket for the ticks elapsed up to now; returns the current tick."""
        current_tick = (now - self._start_time) // self._fill_interval
        last_tick = self._avail_tick
        if current_tick <= last_tick:
            return current_tick
        # The tick advances even while the bucket is full.
        self._avail_tick = current_tick
        if self._avail >= self._capacity:
            return current_tick
        self._avail += (current_tick - last_tick) * self._quantum
        if self._avail > self._capacity:
            self._avail = self._capacity
        return current_tick
