from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from imageregistry.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the item until
    :meth:`forget` resets the streak.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        if exponent >= 64:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all items (``qps`` refill, ``burst`` capacity)."""

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Delay by the worst of several limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """Deduplicating, delaying, rate-limited work queue.

    An item is in at most one of three places at a time:

    ``_queue``
        Ordered items ready to be handed out by :meth:`get`.
    ``_processing``
        Items handed out and not yet marked :meth:`done`.
    ``_waiting``
        Items scheduled by :meth:`add_after`, keyed to their monotonic
        ready-at time.

    ``_dirty`` tracks items that must be (re)processed.  Adding an item that
    is already dirty is a no-op, which is what collapses a burst of watch
    events into a single pending sync.  Adding an item that is currently
    being processed marks it dirty and :meth:`done` puts it back in line, so
    a consumer never sees the same item twice concurrently.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "changes",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: dict[Hashable, float] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._waiter: threading.Thread | None = None
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, item: Hashable) -> None:
        METRICS.workqueue_adds_total.inc()
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.workqueue_depth.set(len(self._queue))
        self._cond.notify_all()

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        """Add *item* once *delay_seconds* have elapsed.

        If the item is already waiting with an earlier ready time the
        earlier time wins.
        """
        if delay_seconds <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            existing = self._waiting.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._sequence), item))
            if self._waiter is None:
                self._waiter = threading.Thread(
                    target=self._wait_loop, name=f"workqueue-{self.name}-waiter", daemon=True
                )
                self._waiter.start()
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is ready or the queue shuts down.

        Returns ``(item, False)`` normally and ``(None, True)`` once
        :meth:`shut_down` has been called.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            METRICS.workqueue_depth.set(len(self._queue))
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                METRICS.workqueue_depth.set(len(self._queue))
                self._cond.notify_all()

    def shut_down(self) -> None:
        """Discard pending work and release every blocked :meth:`get`. Idempotent."""
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._heap.clear()
            METRICS.workqueue_depth.set(0)
            self._cond.notify_all()
        LOGGER.debug("Work queue %s shut down", self.name)

    def _wait_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                if not self._heap:
                    self._cond.wait()
                    continue
                ready_at, _, item = self._heap[0]
                if self._waiting.get(item) != ready_at:
                    # Superseded by an earlier schedule for the same item.
                    heapq.heappop(self._heap)
                    continue
                remaining = ready_at - self._clock()
                if remaining > 0:
                    self._cond.wait(timeout=remaining)
                    continue
                heapq.heappop(self._heap)
                del self._waiting[item]
                self._add_locked(item)
