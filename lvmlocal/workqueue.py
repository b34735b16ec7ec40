"""Rate limiters and a rate-limited work queue for controller workers."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Hashable
from typing import Optional, Protocol


class QueueShutDown(Exception):
    """Raised by RateLimitingQueue.get once the queue is shut down and drained."""


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Delays an item by base_delay * 2**failures, capped at max_delay (seconds)."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        try:
            backoff = self.base_delay * (2**exp)
        except OverflowError:
            return self.max_delay
        return min(backoff, self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class ItemFastSlowRateLimiter:
    """Uses fast_delay for the first max_fast_attempts tries, then slow_delay."""

    def __init__(self, fast_delay: float, slow_delay: float, max_fast_attempts: int) -> None:
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.max_fast_attempts = max_fast_attempts
        self._attempts: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            attempts = self._attempts.get(item, 0) + 1
            self._attempts[item] = attempts
        return self.fast_delay if attempts <= self.max_fast_attempts else self.slow_delay

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._attempts.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._attempts.get(item, 0)


class _TokenBucket:
    """Overall token bucket: qps tokens per second, holding at most burst."""

    def __init__(self, qps: float, burst: int) -> None:
        self.qps = qps
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def delay(self) -> float:
        """Take one token and return how long to wait before it is available."""
        with self._lock:
            now = time.monotonic()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps


class _ControllerRateLimiter:
    """Longest of a per-item limiter's delay and an overall token bucket's delay."""

    def __init__(self, per_item: RateLimiter, bucket: _TokenBucket) -> None:
        self._per_item = per_item
        self._bucket = bucket

    def when(self, item: Hashable) -> float:
        return max(self._per_item.when(item), self._bucket.delay())

    def forget(self, item: Hashable) -> None:
        self._per_item.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._per_item.num_requeues(item)


def default_controller_rate_limiter() -> RateLimiter:
    """Per-item exponential backoff combined with an overall token bucket."""
    return _ControllerRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        _TokenBucket(qps=10.0, burst=100),
    )


class RateLimitingQueue:
    """A de-duplicating FIFO work queue with delayed and rate-limited adds.

    An item is never handed to two workers at once: adding an item that is
    being processed marks it dirty, and it is queued again when done() is called.
    """

    def __init__(self, rate_limiter: Optional[RateLimiter] = None, name: str = "") -> None:
        self.name = name
        self._limiter = rate_limiter if rate_limiter is not None else default_controller_rate_limiter()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._cond = threading.Condition()
        self._timers: set[threading.Timer] = set()

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add the item once delay seconds have passed."""
        with self._cond:
            if self._shutting_down:
                return
        if delay <= 0:
            self.add(item)
            return
        timer: threading.Timer

        def fire() -> None:
            with self._cond:
                self._timers.discard(timer)
            self.add(item)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._limiter.when(item))

    def get(self) -> Hashable:
        """Block until an item is available; raise QueueShutDown when none will come."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                raise QueueShutDown(self.name)
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        self._limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)