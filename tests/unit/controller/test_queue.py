"""Unit tests for the rate-limited work queue."""

import threading
import time

import pytest

from varmor.controller.queue import (
    BucketRateLimiter,
    DelayingQueue,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimitingQueue,
    WorkQueue,
)


@pytest.mark.unit
class TestWorkQueue:
    """Test de-duplication and in-flight tracking."""

    def test_duplicate_adds_are_coalesced(self):
        """Adding the same key repeatedly yields a single entry."""
        queue = WorkQueue("test")
        for _ in range(5):
            queue.add("default/app")

        assert len(queue) == 1
        assert queue.get() == ("default/app", False)
        assert queue.get(timeout=0.05) == (None, False)

    def test_distinct_keys_keep_fifo_order(self):
        """Different keys come out in insertion order."""
        queue = WorkQueue("test")
        for key in ("a", "b", "c"):
            queue.add(key)

        assert [queue.get()[0] for _ in range(3)] == ["a", "b", "c"]

    def test_add_while_processing_is_redelivered_after_done(self):
        """A key re-added mid-processing waits until done() and then comes back once."""
        queue = WorkQueue("test")
        queue.add("k")
        key, _ = queue.get()

        queue.add("k")
        queue.add("k")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert queue.get() == ("k", False)

    def test_done_without_readd_does_not_requeue(self):
        """Finishing a key that was not re-added leaves the queue empty."""
        queue = WorkQueue("test")
        queue.add("k")
        key, _ = queue.get()
        queue.done(key)

        assert len(queue) == 0

    def test_shutdown_drains_then_signals(self):
        """Queued keys are still handed out after shutdown, then get() signals termination."""
        queue = WorkQueue("test")
        queue.add("k")
        queue.shutdown()

        assert queue.get() == ("k", False)
        assert queue.get() == (None, True)

    def test_add_after_shutdown_is_ignored(self):
        """New keys are not accepted once shutting down."""
        queue = WorkQueue("test")
        queue.shutdown()
        queue.add("k")

        assert len(queue) == 0
        assert queue.shutting_down()

    def test_shutdown_unblocks_waiting_getters(self):
        """A blocked get() returns when the queue shuts down."""
        queue = WorkQueue("test")
        results = []

        thread = threading.Thread(target=lambda: results.append(queue.get()))
        thread.start()
        time.sleep(0.05)
        queue.shutdown()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert results == [(None, True)]

    def test_same_key_never_processed_concurrently(self):
        """Workers never hold the same key at the same time."""
        queue = WorkQueue("test")
        active = {"count": 0, "max": 0}
        lock = threading.Lock()
        processed = []

        def worker():
            while True:
                key, shutdown = queue.get()
                if shutdown:
                    return
                with lock:
                    active["count"] += 1
                    active["max"] = max(active["max"], active["count"])
                time.sleep(0.01)
                processed.append(key)
                with lock:
                    active["count"] -= 1
                queue.done(key)

        workers = [threading.Thread(target=worker) for _ in range(4)]
        for thread in workers:
            thread.start()

        for _ in range(20):
            queue.add("default/app")
            time.sleep(0.002)

        time.sleep(0.1)
        queue.shutdown()
        for thread in workers:
            thread.join(timeout=2)

        assert active["max"] == 1
        assert processed
        assert set(processed) == {"default/app"}


@pytest.mark.unit
class TestDelayingQueue:
    """Test delayed insertion."""

    def test_add_after_delivers_later(self):
        """Delayed keys show up once the delay has passed."""
        queue = DelayingQueue("test")
        queue.add_after("k", 0.05)

        assert len(queue) == 0
        assert queue.get(timeout=2) == ("k", False)
        queue.shutdown()

    def test_add_after_zero_delay_adds_immediately(self):
        """A non-positive delay is a plain add."""
        queue = DelayingQueue("test")
        queue.add_after("k", 0)

        assert len(queue) == 1
        queue.shutdown()

    def test_add_after_keeps_earliest_deadline(self):
        """A later deadline for a waiting key does not postpone it."""
        queue = DelayingQueue("test")
        queue.add_after("k", 0.05)
        queue.add_after("k", 10)

        assert queue.get(timeout=2) == ("k", False)
        queue.done("k")
        assert queue.get(timeout=0.1) == (None, False)
        queue.shutdown()


@pytest.mark.unit
class TestRateLimiters:
    """Test the rate limiter building blocks."""

    def test_exponential_backoff(self):
        """Each failure doubles the delay up to the cap."""
        limiter = ItemExponentialFailureRateLimiter(0.005, 0.03)

        delays = [limiter.when("k") for _ in range(5)]

        assert delays == [0.005, 0.01, 0.02, 0.03, 0.03]
        assert limiter.num_requeues("k") == 5

    def test_forget_resets_backoff(self):
        """Forgetting a key starts its backoff over."""
        limiter = ItemExponentialFailureRateLimiter(0.005, 1.0)
        limiter.when("k")
        limiter.when("k")
        limiter.forget("k")

        assert limiter.num_requeues("k") == 0
        assert limiter.when("k") == 0.005

    def test_backoff_is_per_key(self):
        """Failures of one key do not slow down another."""
        limiter = ItemExponentialFailureRateLimiter(0.005, 1.0)
        limiter.when("a")
        limiter.when("a")

        assert limiter.when("b") == 0.005

    def test_bucket_allows_burst_then_throttles(self):
        """The token bucket lets a burst through, then asks callers to wait."""
        limiter = BucketRateLimiter(qps=1.0, burst=2)

        assert limiter.when("a") == 0.0
        assert limiter.when("b") == 0.0
        assert limiter.when("c") > 0.5

    def test_max_of_uses_worst_case(self):
        """The combined limiter reports the longest delay and the item's requeues."""
        limiter = MaxOfRateLimiter(
            ItemExponentialFailureRateLimiter(0.5, 10.0),
            BucketRateLimiter(qps=100.0, burst=100),
        )

        assert limiter.when("k") == 0.5
        assert limiter.num_requeues("k") == 1
        limiter.forget("k")
        assert limiter.num_requeues("k") == 0


@pytest.mark.unit
class TestRateLimitingQueue:
    """Test retry bookkeeping on the queue."""

    def test_add_rate_limited_counts_requeues(self):
        """Rate-limited re-adds are counted and delivered."""
        queue = RateLimitingQueue("test", ItemExponentialFailureRateLimiter(0.001, 0.01))

        queue.add_rate_limited("k")

        assert queue.num_requeues("k") == 1
        assert queue.get(timeout=2) == ("k", False)
        queue.forget("k")
        assert queue.num_requeues("k") == 0
        queue.shutdown()
