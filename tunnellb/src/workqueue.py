from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from tunnellb.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to ``when`` counts as one failure for the item, so the n-th
    requeue waits twice as long as the previous one.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delays must be >= 0")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._lock = threading.Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # Very large exponents overflow int-to-float conversion.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Global token bucket bounding overall reconcile throughput.

    Each ``when`` reserves one token and returns how long the caller has
    to wait for it.  The bucket is shared by all items and has no per-item
    memory, so ``forget`` and ``num_requeues`` are no-ops.
    """

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
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

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
    """Per-key backoff from 5ms to 1000s, bounded overall by 10 qps with a burst of 100."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """Deduplicating FIFO of keys with in-flight tracking.

    An item is in at most one of two states at a time:

    ``dirty``
        Waiting to be handed out by ``get``.  Adding it again is a no-op.
    ``processing``
        Handed out to a worker and not yet marked ``done``.  Adding it
        again marks it dirty without queueing it; ``done`` then puts it
        back so the change is processed after the current run finishes.

    This is what guarantees that no two workers ever see the same key at
    the same time.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            METRICS.queue_adds_total.inc()
            if item in self._processing:
                return
            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is available; return ``(item, shutdown)``.

        Once the queue is shut down no further items are handed out and
        every caller receives ``(None, True)``.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def is_idle(self) -> bool:
        """Return whether nothing is queued and no worker holds an item."""
        with self._cond:
            return not self._queue and not self._processing

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class DelayingQueue(WorkQueue):
    """WorkQueue that can hold items back until a deadline.

    A single background thread keeps a heap of ``(ready_at, seq, item)``
    and moves items into the queue once they are due.  If an item is
    scheduled twice before it fires, the earlier deadline wins.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name=name)
        self._clock = clock
        self._delay_cond = threading.Condition()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop,
            name=f"{name or 'workqueue'}-delay",
            daemon=True,
        )
        self._waiting_thread.start()

    def add_after(self, item: Hashable, delay: float) -> None:
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return
        ready_at = self._clock() + delay
        with self._delay_cond:
            existing = self._ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._delay_cond.notify()

    def waiting_count(self) -> int:
        with self._delay_cond:
            return len(self._ready_at)

    def _pop_due(self, now: float) -> list[Hashable]:
        due: list[Hashable] = []
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # Stale heap entries are left behind when an item is rescheduled earlier.
            if self._ready_at.get(item) != ready_at:
                continue
            del self._ready_at[item]
            due.append(item)
        return due

    def _waiting_loop(self) -> None:
        while not self.shutting_down():
            with self._delay_cond:
                due = self._pop_due(self._clock())
                if not due:
                    timeout = None
                    if self._waiting:
                        timeout = max(0.0, self._waiting[0][0] - self._clock())
                    # Bounded wait so shut_down is observed without an explicit notify.
                    self._delay_cond.wait(timeout=min(timeout, 1.0) if timeout is not None else 1.0)
                    continue
            for item in due:
                self.add(item)

    def shut_down(self) -> None:
        super().shut_down()
        with self._delay_cond:
            self._delay_cond.notify_all()


class RateLimitingQueue(DelayingQueue):
    """DelayingQueue whose requeue delay comes from a :class:`RateLimiter`."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable) -> float:
        """Requeue *item* after the limiter's delay and return that delay."""
        delay = self.rate_limiter.when(item)
        self.add_after(item, delay)
        return delay

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
