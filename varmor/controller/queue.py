"""
Rate-limited work queue of policy keys.

Semantics:
- A key is queued at most once, however many times it is added before a
  worker picks it up.
- A key is processed by at most one worker at a time. Adding it while it is
  being processed marks it dirty; ``done()`` puts it back on the queue.
- Failed keys are re-added with per-key exponential backoff, bounded by an
  overall token bucket.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Dict, Hashable, List, Optional, Tuple

from varmor.core import metrics

# ============================================================================
# RATE LIMITERS
# ============================================================================


class RateLimiter:
    def when(self, item: Hashable) -> float:
        """Seconds to wait before the item may be processed again."""
        raise NotImplementedError

    def forget(self, item: Hashable):
        raise NotImplementedError

    def num_requeues(self, item: Hashable) -> int:
        raise NotImplementedError


class ItemExponentialFailureRateLimiter(RateLimiter):
    """base_delay * 2^failures per item, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item):
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1

        # Avoid float overflow for items that keep failing
        if exp > 62:
            return self.max_delay
        return min(self.base_delay * (2**exp), self.max_delay)

    def forget(self, item):
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item):
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter):
    """Overall token bucket shared by all items."""

    def __init__(self, qps: float = 10.0, burst: int = 100):
        self.qps = qps
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def when(self, item):
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item):
        pass

    def num_requeues(self, item):
        return 0


class MaxOfRateLimiter(RateLimiter):
    """Worst case of several limiters."""

    def __init__(self, *limiters: RateLimiter):
        self.limiters = limiters

    def when(self, item):
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item):
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item):
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> RateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


# ============================================================================
# QUEUES
# ============================================================================


class WorkQueue:
    """De-duplicating FIFO with in-flight tracking."""

    def __init__(self, name: str = ""):
        self.name = name
        self._queue: deque = deque()
        self._dirty = set()
        self._processing = set()
        self._shutting_down = False
        self._cond = threading.Condition()

    def add(self, item: Hashable):
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            metrics.queue_adds.labels(name=self.name).inc()
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            metrics.queue_depth.labels(name=self.name).set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[Hashable], bool]:
        """Block until an item is available.

        Returns ``(item, shutdown)``. Once the queue is shut down and empty,
        returns ``(None, True)``. With a ``timeout``, returns ``(None, False)``
        if nothing arrived in time.
        """
        with self._cond:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)

            if not self._queue:
                return None, True

            item = self._queue.popleft()
            metrics.queue_depth.labels(name=self.name).set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable):
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                metrics.queue_depth.labels(name=self.name).set(len(self._queue))
                self._cond.notify()

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self):
        with self._cond:
            return len(self._queue)


class DelayingQueue(WorkQueue):
    """WorkQueue that can hold items back for a while before adding them."""

    def __init__(self, name: str = ""):
        super().__init__(name)
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._ready_at: Dict[Hashable, float] = {}
        self._counter = itertools.count()
        self._waiting_cond = threading.Condition()
        self._stopped = False
        self._waiter = threading.Thread(
            target=self._waiting_loop, name=f"{name or 'queue'}-delay", daemon=True
        )
        self._waiter.start()

    def add_after(self, item: Hashable, delay: float):
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return

        ready_at = time.monotonic() + delay
        with self._waiting_cond:
            # Keep only the earliest deadline per item
            current = self._ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._counter), item))
            self._waiting_cond.notify()

    def shutdown(self):
        super().shutdown()
        with self._waiting_cond:
            self._stopped = True
            self._waiting_cond.notify_all()

    def _waiting_loop(self):
        while True:
            ready: List[Hashable] = []
            with self._waiting_cond:
                if self._stopped:
                    return

                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Skip entries superseded by an earlier deadline
                    if self._ready_at.get(item) == ready_at:
                        del self._ready_at[item]
                        ready.append(item)

                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout)

            for item in ready:
                self.add(item)


class RateLimitingQueue(DelayingQueue):
    """DelayingQueue whose re-adds are spaced out by a rate limiter."""

    def __init__(self, name: str = "", rate_limiter: Optional[RateLimiter] = None):
        super().__init__(name)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable):
        metrics.queue_retries.labels(name=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable):
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
